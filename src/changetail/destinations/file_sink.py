"""
Append-only file destination for change events.
"""

import logging
from pathlib import Path
from typing import Optional, TextIO, Union

from ..connectors.cdc.models import ChangeEvent
from ..core.utils.bson_convert import document_to_line
from ..exceptions import SinkWriteError

logger = logging.getLogger(__name__)


class FileSink:
    """
    Write each change event's full document as one line of Extended JSON.

    The file is opened in append mode and never truncated. Each line is
    flushed as soon as it is written.

    Thread Safety: NOT thread-safe. Only the delivery loop writes to it.
    """

    def __init__(self, path: Union[str, Path]):
        """
        Open the output file.

        Args:
            path: Output file path, created if missing

        Raises:
            SinkWriteError: If the file cannot be opened
        """
        self.path = Path(path)
        self.lines_written = 0
        try:
            self._file: Optional[TextIO] = open(self.path, "a", encoding="utf-8")
        except OSError as e:
            raise SinkWriteError(f"Failed to open output file {self.path}: {e}") from e

    def write(self, event: ChangeEvent) -> None:
        """
        Append one event.

        Raises:
            SinkWriteError: If the sink is closed or the write fails
        """
        if self._file is None:
            raise SinkWriteError(f"Output file {self.path} is closed")
        try:
            line = document_to_line(event.full_document)
            self._file.write(line + "\n")
            self._file.flush()
        except (OSError, TypeError, ValueError) as e:
            raise SinkWriteError(f"Failed to write change event to {self.path}: {e}") from e
        self.lines_written += 1

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                logger.warning(f"Failed to close output file {self.path}: {e}")
            self._file = None

    def __enter__(self) -> "FileSink":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
