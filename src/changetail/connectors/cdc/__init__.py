"""
CDC (Change Data Capture) module for MongoDB change stream tailing.
"""

from .mongo_changestream import ChangeStreamConsumer, build_pipeline
from .checkpoint_store import FileCheckpointStore
from .models import ChangeEvent, OperationType

__all__ = [
    "ChangeStreamConsumer",
    "build_pipeline",
    "FileCheckpointStore",
    "ChangeEvent",
    "OperationType",
]
