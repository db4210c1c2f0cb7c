"""
Stream job: the process lifecycle around the change stream consumer.

Startup: read the resume token, open the output file, open the change stream.
Run: one delivery thread, the main thread waits for SIGINT/SIGTERM.
Shutdown: join the delivery thread, close the stream, save its position.
"""

import logging
import signal
import threading
from typing import Optional

import pymongo
from pymongo.errors import ConfigurationError

from ..config.settings import Settings
from ..connectors.cdc.checkpoint_store import FileCheckpointStore
from ..connectors.cdc.mongo_changestream import ChangeStreamConsumer
from ..destinations.file_sink import FileSink
from ..exceptions import ConfigError, StreamError

logger = logging.getLogger(__name__)


def create_client(settings: Settings) -> pymongo.MongoClient:
    """Create a MongoClient for the configured source. Caller is responsible for closing it.

    Looking up pymongo.MongoClient at call time allows tests to monkeypatch it.
    """
    try:
        return pymongo.MongoClient(
            settings.mongo.uri,
            directConnection=settings.mongo.direct_connection,
            serverSelectionTimeoutMS=settings.mongo.server_selection_timeout * 1000
        )
    except ConfigurationError as e:
        raise ConfigError(f"Invalid MongoDB URI: {e}") from e


class StreamJob:
    """
    Run one change stream tail until a termination signal arrives.

    Fatal errors (ConfigError, StreamConnectionError, StorageError while
    reading the token, SinkWriteError while opening the output file) are
    raised from run() before the delivery thread starts. An unexpected crash
    of the delivery thread is re-raised as StreamError after shutdown.
    """

    def __init__(self, settings: Settings, install_signal_handlers: bool = True):
        self.settings = settings
        self.install_signal_handlers = install_signal_handlers
        self.stop_event = threading.Event()
        self.checkpoint_store: Optional[FileCheckpointStore] = (
            FileCheckpointStore(settings) if settings.with_resume else None
        )
        self.events_delivered = 0
        self.loop_error: Optional[BaseException] = None

        self._original_sigterm = None
        self._original_sigint = None

    def run(self) -> int:
        """
        Tail the change stream (blocking call).

        Returns:
            Number of events written to the output file

        Raises:
            ConfigError, StreamConnectionError, StorageError, SinkWriteError:
                On fatal startup failures
            StreamError: If the delivery loop crashed; raised after the
                position was saved
        """
        resume_from = None
        if self.checkpoint_store is not None:
            resume_from = self.checkpoint_store.retrieve()
        else:
            logger.info("Resume disabled, starting from the current tail")

        client = create_client(self.settings)
        try:
            collection = client[self.settings.mongo.database][self.settings.mongo.collection]
            with FileSink(self.settings.output_file) as sink:
                consumer = ChangeStreamConsumer(collection, self.settings, self.stop_event)
                try:
                    consumer.open(resume_from)
                    self._run_delivery(consumer, sink)
                finally:
                    consumer.close()

                if self.checkpoint_store is not None:
                    self.checkpoint_store.save(consumer.current_position())
        finally:
            client.close()

        if self.loop_error is not None:
            logger.error(
                f"Delivery loop crashed: {self.loop_error}",
                extra={"feed": self.settings.feed_identity, "events_delivered": self.events_delivered}
            )
            raise StreamError(f"Delivery loop crashed: {self.loop_error}") from self.loop_error

        logger.info(
            "Stream job finished",
            extra={"feed": self.settings.feed_identity, "events_delivered": self.events_delivered}
        )
        return self.events_delivered

    def stop(self) -> None:
        self.stop_event.set()

    def _run_delivery(self, consumer: ChangeStreamConsumer, sink: FileSink) -> None:
        if self.install_signal_handlers:
            self._setup_signal_handlers()
        try:
            thread = threading.Thread(
                target=self._delivery_target,
                args=(consumer, sink),
                name="changetail-delivery"
            )
            thread.start()

            # Timed wait keeps the main thread responsive to signals
            while not self.stop_event.wait(timeout=1.0):
                pass
            logger.info("exit signalled. stopping delivery loop")
            thread.join()
        finally:
            if self.install_signal_handlers:
                self._restore_signal_handlers()

    def _delivery_target(self, consumer: ChangeStreamConsumer, sink: FileSink) -> None:
        try:
            self.events_delivered = consumer.run(sink)
        except Exception as e:
            # Logged by the consumer
            self.loop_error = e
            self.events_delivered = consumer.events_delivered

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
