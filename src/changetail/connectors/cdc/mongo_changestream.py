"""
MongoDB change stream consumer with resumable position tracking.

Responsibilities:
1. Open a change stream filtered to insert/update/replace events
2. Resume strictly after a saved token, or start at the current tail
3. Hand events to the sink one by one, in feed order
4. Track the latest resume token so it can be checkpointed at shutdown
5. Stop promptly when the shared stop event is set
"""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from bson.errors import BSONError
from pymongo.change_stream import ChangeStream
from pymongo.errors import OperationFailure, PyMongoError

from ...config.settings import Settings
from ...core.utils.bson_convert import document_to_line
from ...exceptions import CDCError, ResumeTokenError, SinkWriteError, StreamConnectionError, StreamError
from ...monitoring.metrics import cdc_events_delivered, cdc_sink_errors_total, cdc_stream_errors_total
from .models import PROJECTED_FIELDS, ChangeEvent, OperationType

logger = logging.getLogger(__name__)

# Server error codes meaning the resume token cannot be used
# 260: InvalidResumeToken, 280: ChangeStreamFatalError, 286: ChangeStreamHistoryLost
RESUME_TOKEN_ERROR_CODES = frozenset({260, 280, 286})


def build_pipeline() -> List[Dict[str, Any]]:
    """Aggregation pipeline applied on the server side of the change stream."""
    return [
        {"$match": {"operationType": {"$in": [op.value for op in OperationType]}}},
        {"$project": {name: 1 for name in PROJECTED_FIELDS}},
    ]


class ChangeStreamConsumer:
    """
    Consume a MongoDB change stream one event at a time.

    Features:
    - Server-side filtering of operation kinds
    - Full post-image for updates (updateLookup)
    - Resume after a saved token
    - Cooperative cancellation through a threading.Event

    Thread Safety: NOT thread-safe. The delivery loop owns the subscription
    while it runs; the main thread closes it only after joining the loop.

    Example:
        >>> consumer = ChangeStreamConsumer(db['users'], settings, stop_event)
        >>> consumer.open(resume_from=store.retrieve())
        >>> consumer.run(sink)
        >>> consumer.close()
        >>> store.save(consumer.current_position())
    """

    def __init__(
        self,
        collection,
        settings: Settings,
        stop_event: Optional[threading.Event] = None
    ):
        """
        Initialize consumer.

        Args:
            collection: PyMongo collection to watch
            settings: Application settings
            stop_event: Cancellation signal shared with the main thread

        Raises:
            TypeError: If collection does not support change streams
        """
        if not hasattr(collection, 'watch'):
            raise TypeError("collection must be a PyMongo Collection instance")

        self.collection = collection
        self.collection_name = collection.name
        self.stream_settings = settings.stream
        self.stop_event = stop_event or threading.Event()

        self._stream: Optional[ChangeStream] = None
        self._position: Optional[Dict[str, Any]] = None
        self._closed = False
        self.events_delivered = 0

        logger.info(
            f"Initialized ChangeStreamConsumer for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "max_await_time_ms": self.stream_settings.max_await_time_ms,
                "batch_size": self.stream_settings.batch_size
            }
        )

    def open(self, resume_from: Optional[Mapping[str, Any]] = None) -> ChangeStream:
        """
        Open the change stream.

        Args:
            resume_from: Token to resume strictly after; None starts at the
                current tail with no backfill

        Returns:
            The opened PyMongo change stream

        Raises:
            ResumeTokenError: If the server rejects the resume token
            StreamConnectionError: If the stream cannot be opened
        """
        if self._stream is not None or self._closed:
            raise CDCError("Change stream consumer can only be opened once")

        stream_options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "batch_size": self.stream_settings.batch_size,
            "max_await_time_ms": self.stream_settings.max_await_time_ms
        }
        if resume_from:
            stream_options["resume_after"] = resume_from

        logger.info(
            f"Opening change stream for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "has_resume_token": bool(resume_from)
            }
        )

        try:
            self._stream = self.collection.watch(pipeline=build_pipeline(), **stream_options)
        except OperationFailure as e:
            if resume_from and e.code in RESUME_TOKEN_ERROR_CODES:
                raise ResumeTokenError(
                    f"Resume token rejected for collection {self.collection_name}: {e}"
                ) from e
            raise StreamConnectionError(
                f"Failed to open change stream on {self.collection_name}: {e}"
            ) from e
        except PyMongoError as e:
            raise StreamConnectionError(
                f"Failed to open change stream on {self.collection_name}: {e}"
            ) from e

        self._position = self._stream_token() or (dict(resume_from) if resume_from else None)
        logger.info(
            "started change stream...",
            extra={"collection": self.collection_name}
        )
        return self._stream

    def next(self) -> Optional[ChangeEvent]:
        """
        Wait for the next event.

        Returns:
            The next ChangeEvent, or None when the stream ended, the consumer
            was closed, or the stop event was set

        Raises:
            StreamError: If polling fails or the event cannot be decoded
        """
        if self._stream is None or self._closed:
            return None

        while not self.stop_event.is_set():
            try:
                change = self._stream.try_next()
            except (PyMongoError, BSONError) as e:
                raise StreamError(f"Change stream failed: {e}") from e

            if change is None:
                # Empty batch: the post-batch token only covers events we have seen
                self._remember_position(self._stream_token())
                if not self._stream.alive:
                    logger.info(
                        "Change stream closed by the server",
                        extra={"collection": self.collection_name}
                    )
                    return None
                continue

            event = ChangeEvent.from_change(change)
            self._remember_position(self._stream_token() or event.resume_token)
            return event

        return None

    def current_position(self) -> Optional[Dict[str, Any]]:
        """Token of the last delivered event, or the starting position."""
        return self._position

    def stop(self) -> None:
        """Signal the delivery loop to stop after the current event."""
        logger.info(
            f"Stopping change stream consumer for collection {self.collection_name}",
            extra={"collection": self.collection_name}
        )
        self.stop_event.set()

    def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._stream is None:
            return
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.warning(
                f"failed to close change stream: {e}",
                extra={"collection": self.collection_name}
            )
        logger.info(
            "Change stream closed",
            extra={"collection": self.collection_name, "events_delivered": self.events_delivered}
        )

    def run(self, sink) -> int:
        """
        Delivery loop: forward every event to the sink until stopped.

        A failed sink write is logged and the loop moves on; the event still
        counts as seen for positioning. A StreamError ends the loop. The stop
        event is always set on exit so the main thread can proceed to shutdown.

        Args:
            sink: Object with a write(event) method raising SinkWriteError

        Returns:
            Number of events handed to the sink
        """
        try:
            while True:
                try:
                    event = self.next()
                except StreamError as e:
                    cdc_stream_errors_total.labels(
                        collection=self.collection_name,
                        error_type=type(e.__cause__ or e).__name__
                    ).inc()
                    logger.error(
                        f"Change stream error, stopping delivery: {e}",
                        extra={"collection": self.collection_name}
                    )
                    break

                if event is None:
                    break

                self._trace(event)
                self._deliver(event, sink)
        except Exception as e:
            logger.error(
                f"Unexpected error in change stream delivery: {e}",
                extra={"collection": self.collection_name}
            )
            raise
        finally:
            self.stop_event.set()

        logger.info(
            "Delivery loop finished",
            extra={"collection": self.collection_name, "events_delivered": self.events_delivered}
        )
        return self.events_delivered

    def _deliver(self, event: ChangeEvent, sink) -> None:
        if not event.has_full_document:
            logger.warning(
                "Change event has no full document (record removed before lookup), skipping",
                extra={"collection": self.collection_name, "document_key": str(event.document_key)}
            )
            return

        try:
            sink.write(event)
        except SinkWriteError as e:
            cdc_sink_errors_total.labels(collection=self.collection_name).inc()
            logger.error(
                f"failed to save change event: {e}",
                extra={"collection": self.collection_name, "operation": event.operation.value}
            )
            return

        self.events_delivered += 1
        cdc_events_delivered.labels(
            collection=self.collection_name,
            operation=event.operation.value
        ).inc()
        logger.debug(
            "saved change event",
            extra={"collection": self.collection_name, "operation": event.operation.value}
        )

    def _trace(self, event: ChangeEvent) -> None:
        """Write the raw change document to the log. Never fails the delivery."""
        if not logger.isEnabledFor(logging.INFO):
            return
        try:
            logger.info(
                f"Change event: {document_to_line(event.raw)}",
                extra={"collection": self.collection_name, "operation": event.operation.value}
            )
        except (TypeError, ValueError) as e:
            logger.debug(f"Could not render change event for tracing: {e}")

    def _stream_token(self) -> Optional[Dict[str, Any]]:
        token = getattr(self._stream, 'resume_token', None)
        return dict(token) if token else None

    def _remember_position(self, token: Optional[Dict[str, Any]]) -> None:
        if token:
            self._position = token
