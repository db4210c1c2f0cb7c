from .stream_job import StreamJob, create_client

__all__ = ["StreamJob", "create_client"]
