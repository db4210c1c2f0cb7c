"""
File-backed checkpoint store for change stream resume tokens.

One artifact per feed identity, holding exactly the raw BSON bytes of the
latest resume token. Saves overwrite the artifact atomically.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

from bson.errors import BSONError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ...config.settings import Settings
from ...core.utils.bson_convert import token_from_bytes, token_to_bytes
from ...exceptions import StorageError
from ...monitoring.metrics import checkpoint_loads_total, checkpoint_saves_total

logger = logging.getLogger(__name__)

_io_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type(OSError),
    reraise=True
)


class FileCheckpointStore:
    """
    Checkpoint store for a single feed.

    Features:
    - Missing artifact means "no checkpoint", not an error
    - Atomic overwrite (temp file + fsync + rename)
    - Automatic retry on transient I/O failures

    Thread Safety: NOT thread-safe. Touched only by the main thread at
    startup and shutdown.

    Example:
        >>> store = FileCheckpointStore(settings)
        >>> store.save(consumer.current_position())
        >>> token = store.retrieve()
    """

    def __init__(self, settings: Settings):
        """
        Initialize checkpoint store.

        Args:
            settings: Application settings; the artifact path is derived from
                the feed identity unless CHECKPOINT_TOKEN_FILE is set
        """
        self.path: Path = settings.token_path
        self.feed = settings.feed_identity

        logger.info(
            f"CheckpointStore using {self.path}",
            extra={"feed": self.feed, "path": str(self.path)}
        )

    def retrieve(self) -> Optional[Mapping[str, Any]]:
        """
        Load the saved resume token.

        Returns:
            Resume token if one was saved, None otherwise

        Raises:
            StorageError: If the artifact exists but cannot be read or decoded
        """
        try:
            data = self._read_bytes()
        except OSError as e:
            checkpoint_loads_total.labels(status='error').inc()
            logger.error(
                f"Failed to read resume token: {e}",
                extra={"feed": self.feed, "path": str(self.path)}
            )
            raise StorageError(f"Failed to read resume token from {self.path}: {e}") from e

        if not data:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.info(
                "No resume token found, starting from the current tail",
                extra={"feed": self.feed}
            )
            return None

        try:
            token = token_from_bytes(data)
        except (BSONError, ValueError) as e:
            checkpoint_loads_total.labels(status='invalid').inc()
            logger.error(
                f"Resume token file is corrupt: {e}",
                extra={"feed": self.feed, "path": str(self.path)}
            )
            raise StorageError(f"Corrupt resume token in {self.path}: {e}") from e

        checkpoint_loads_total.labels(status='success').inc()
        logger.info(
            "Loaded resume token",
            extra={"feed": self.feed, "token_bytes": len(data)}
        )
        return token

    def save(self, position: Optional[Mapping[str, Any]]) -> bool:
        """
        Overwrite the saved resume token.

        An empty position is ignored so a run that observed nothing never
        replaces a useful token. Failures are logged, not raised; the next run
        then resumes from the older token and re-delivers some events.

        Args:
            position: Resume token to persist

        Returns:
            True if the token was written
        """
        if not position:
            checkpoint_saves_total.labels(status='skipped').inc()
            logger.info(
                "Empty resume token, nothing to save",
                extra={"feed": self.feed}
            )
            return False

        try:
            data = token_to_bytes(position)
            self._write_bytes(data)
        except (OSError, BSONError, TypeError) as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(
                f"Failed to save resume token: {e}",
                extra={"feed": self.feed, "path": str(self.path)}
            )
            return False

        checkpoint_saves_total.labels(status='success').inc()
        logger.info(
            f"Saved resume token to {self.path}",
            extra={"feed": self.feed, "token_bytes": len(data)}
        )
        return True

    def delete(self) -> None:
        """
        Delete the saved resume token (resets the feed to the current tail).

        Raises:
            StorageError: If the artifact exists but cannot be removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.debug("No resume token to delete", extra={"feed": self.feed})
            return
        except OSError as e:
            raise StorageError(f"Failed to delete resume token {self.path}: {e}") from e
        logger.info(f"Deleted resume token {self.path}", extra={"feed": self.feed})

    @_io_retry
    def _read_bytes(self) -> bytes:
        try:
            with open(self.path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return b""

    @_io_retry
    def _write_bytes(self, data: bytes) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
