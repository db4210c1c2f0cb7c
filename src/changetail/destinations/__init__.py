from .file_sink import FileSink

__all__ = ["FileSink"]
