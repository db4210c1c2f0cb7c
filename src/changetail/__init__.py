"""
changetail: tail a MongoDB change stream into an append-only file,
resuming from the last saved position across restarts.
"""

__version__ = "0.1.0"
