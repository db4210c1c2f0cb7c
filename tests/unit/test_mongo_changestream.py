"""Unit tests for the change stream consumer."""

import logging
import threading
import time
from unittest.mock import Mock, patch

import pytest
from bson.errors import InvalidBSON
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from changetail.connectors.cdc.mongo_changestream import ChangeStreamConsumer, build_pipeline
from changetail.connectors.cdc.models import OperationType
from changetail.exceptions import CDCError, ResumeTokenError, SinkWriteError, StreamConnectionError, StreamError

from ..fakes import FakeCollection, make_change, make_token


class ListSink:
    """Sink collecting full documents in memory."""

    def __init__(self, fail_on=()):
        self.documents = []
        self.attempts = 0
        self.fail_on = set(fail_on)

    def write(self, event):
        self.attempts += 1
        if self.attempts in self.fail_on:
            raise SinkWriteError("disk full")
        self.documents.append(event.full_document)


def three_event_feed():
    return [
        make_change(0, "insert", {"_id": "doc1", "v": 1}),
        make_change(1, "update", {"_id": "doc2", "v": 2}),
        make_change(2, "replace", {"_id": "doc3", "v": 3}),
    ]


class TestBuildPipeline:
    """Test the server-side pipeline."""

    def test_matches_only_insert_update_replace(self):
        match = build_pipeline()[0]["$match"]
        assert sorted(match["operationType"]["$in"]) == ["insert", "replace", "update"]

    def test_projection_keeps_fields_needed_for_decoding(self):
        project = build_pipeline()[1]["$project"]
        for name in ("_id", "operationType", "fullDocument", "documentKey", "ns"):
            assert project[name] == 1


class TestChangeStreamConsumer:
    """Test ChangeStreamConsumer."""

    def test_init_validates_collection(self, settings):
        with pytest.raises(TypeError, match="collection must be a PyMongo Collection"):
            ChangeStreamConsumer("not_a_collection", settings)

    def test_open_without_position_starts_at_tail(self, settings):
        collection = FakeCollection(three_event_feed(), tail=3)
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open()

        call = collection.watch_calls[0]
        assert "resume_after" not in call
        assert call["full_document"] == "updateLookup"
        assert call["max_await_time_ms"] == settings.stream.max_await_time_ms
        assert call["batch_size"] == settings.stream.batch_size
        assert call["pipeline"] == build_pipeline()
        # No backfill of history
        assert consumer.next() is None

    def test_open_with_position_resumes_strictly_after(self, settings):
        collection = FakeCollection(three_event_feed(), tail=3)
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open(resume_from=make_token(0))

        assert collection.watch_calls[0]["resume_after"] == make_token(0)
        assert consumer.current_position() == make_token(0)
        event = consumer.next()
        assert event.full_document == {"_id": "doc2", "v": 2}

    def test_open_twice_is_rejected(self, settings):
        consumer = ChangeStreamConsumer(FakeCollection([]), settings)
        consumer.open()
        with pytest.raises(CDCError, match="only be opened once"):
            consumer.open()

    def test_unreachable_server_raises_connection_error(self, settings):
        collection = FakeCollection([])
        collection.watch = Mock(side_effect=ServerSelectionTimeoutError("no servers"))
        consumer = ChangeStreamConsumer(collection, settings)
        with pytest.raises(StreamConnectionError, match="no servers"):
            consumer.open()

    def test_expired_token_raises_resume_token_error(self, settings):
        collection = FakeCollection(three_event_feed())
        consumer = ChangeStreamConsumer(collection, settings)
        with pytest.raises(ResumeTokenError):
            consumer.open(resume_from={"_data": "expired"})

    def test_other_operation_failure_is_not_a_token_error(self, settings):
        collection = FakeCollection([])
        collection.watch = Mock(side_effect=OperationFailure(
            "The $changeStream stage is only supported on replica sets", code=40573
        ))
        consumer = ChangeStreamConsumer(collection, settings)
        with pytest.raises(StreamConnectionError) as exc_info:
            consumer.open(resume_from=make_token(0))
        assert not isinstance(exc_info.value, ResumeTokenError)

    def test_run_delivers_events_in_feed_order(self, settings):
        feed = [
            make_change(i, ("insert", "update", "replace")[i % 3], {"_id": i})
            for i in range(50)
        ]
        consumer = ChangeStreamConsumer(FakeCollection(feed), settings)
        consumer.open()
        sink = ListSink()

        delivered = consumer.run(sink)

        assert delivered == 50
        assert sink.documents == [{"_id": i} for i in range(50)]
        assert consumer.current_position() == make_token(49)
        assert consumer.stop_event.is_set()

    def test_delete_events_never_reach_the_sink(self, settings):
        feed = [
            make_change(0, "insert", {"_id": 1}),
            make_change(1, "delete", None),
            make_change(2, "update", {"_id": 2}),
            make_change(3, "drop", None),
        ]
        consumer = ChangeStreamConsumer(FakeCollection(feed), settings)
        consumer.open()
        sink = ListSink()

        consumer.run(sink)

        assert sink.documents == [{"_id": 1}, {"_id": 2}]

    def test_sink_failure_does_not_stop_the_loop(self, settings):
        consumer = ChangeStreamConsumer(FakeCollection(three_event_feed()), settings)
        consumer.open()
        sink = ListSink(fail_on={2})

        delivered = consumer.run(sink)

        assert delivered == 2
        assert sink.attempts == 3
        assert sink.documents == [{"_id": "doc1", "v": 1}, {"_id": "doc3", "v": 3}]
        # The failed event still counts as seen
        assert consumer.current_position() == make_token(2)

    def test_stream_error_ends_loop_and_keeps_last_good_position(self, settings):
        collection = FakeCollection(three_event_feed(), fail_at=1)
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open()
        sink = ListSink()

        delivered = consumer.run(sink)

        assert delivered == 1
        assert consumer.current_position() == make_token(0)
        assert consumer.stop_event.is_set()

    def test_corrupt_batch_raises_stream_error(self, settings):
        collection = FakeCollection(three_event_feed(), fail_at=1, error=InvalidBSON("invalid utf-8"))
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open()
        consumer.next()

        with pytest.raises(StreamError, match="invalid utf-8"):
            consumer.next()

    def test_corrupt_batch_ends_loop_and_keeps_last_good_position(self, settings):
        collection = FakeCollection(three_event_feed(), fail_at=1, error=InvalidBSON("invalid utf-8"))
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open()
        sink = ListSink()

        delivered = consumer.run(sink)

        assert delivered == 1
        assert sink.documents == [{"_id": "doc1", "v": 1}]
        assert consumer.current_position() == make_token(0)
        assert consumer.stop_event.is_set()

    def test_undecodable_event_does_not_advance_position(self, settings):
        bad = make_change(1, "insert", {"_id": 2})
        del bad["operationType"]
        feed = [make_change(0, "insert", {"_id": 1}), bad, make_change(2, "insert", {"_id": 3})]
        # Bypass the pipeline so the malformed document reaches the consumer
        collection = FakeCollection(feed)
        collection._apply_pipeline = lambda change, pipeline: change
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open()
        sink = ListSink()

        consumer.run(sink)

        assert sink.documents == [{"_id": 1}]
        assert consumer.current_position() == make_token(0)

    def test_missing_post_image_is_skipped_but_seen(self, settings):
        feed = [make_change(0, "update", None), make_change(1, "insert", {"_id": 1})]
        consumer = ChangeStreamConsumer(FakeCollection(feed), settings)
        consumer.open()
        sink = ListSink()

        delivered = consumer.run(sink)

        assert delivered == 1
        assert sink.documents == [{"_id": 1}]
        assert consumer.current_position() == make_token(1)

    def test_trace_failure_is_not_fatal(self, settings, caplog):
        caplog.set_level(logging.INFO)
        consumer = ChangeStreamConsumer(FakeCollection(three_event_feed()), settings)
        consumer.open()
        sink = ListSink()

        with patch(
            "changetail.connectors.cdc.mongo_changestream.document_to_line",
            side_effect=TypeError("cannot render")
        ):
            delivered = consumer.run(sink)

        assert delivered == 3

    def test_raw_event_is_traced(self, settings, caplog):
        caplog.set_level(logging.INFO, logger="changetail.connectors.cdc.mongo_changestream")
        consumer = ChangeStreamConsumer(FakeCollection(three_event_feed()[:1]), settings)
        consumer.open()

        consumer.run(ListSink())

        traces = [r for r in caplog.records if r.getMessage().startswith("Change event:")]
        assert len(traces) == 1
        assert '"operationType": "insert"' in traces[0].getMessage()
        assert traces[0].operation == OperationType.INSERT.value

    def test_event_is_traced_before_it_is_written(self, settings, caplog):
        caplog.set_level(logging.INFO, logger="changetail.connectors.cdc.mongo_changestream")
        consumer = ChangeStreamConsumer(FakeCollection(three_event_feed()), settings)
        consumer.open()
        traced_at_write = []

        class TraceCheckingSink(ListSink):
            def write(self, event):
                traces = [r for r in caplog.records if r.getMessage().startswith("Change event:")]
                traced_at_write.append(len(traces))
                assert '"_id": "%s"' % event.full_document["_id"] in traces[-1].getMessage()
                super().write(event)

        sink = TraceCheckingSink()
        consumer.run(sink)

        assert len(sink.documents) == 3
        assert traced_at_write == [1, 2, 3]

    def test_stop_event_cancels_a_waiting_loop(self, settings):
        collection = FakeCollection(
            three_event_feed(), end_when_drained=False, poll_delay=0.01
        )
        stop_event = threading.Event()
        consumer = ChangeStreamConsumer(collection, settings, stop_event)
        consumer.open()
        sink = ListSink()

        thread = threading.Thread(target=consumer.run, args=(sink,))
        thread.start()
        # Feed drained; the loop is now polling for more
        for _ in range(200):
            if collection.streams[0].polls > 3:
                break
            time.sleep(0.01)
        stop_event.set()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert len(sink.documents) == 3
        assert consumer.current_position() == make_token(2)

    def test_next_returns_none_after_stop(self, settings):
        consumer = ChangeStreamConsumer(FakeCollection(three_event_feed()), settings)
        consumer.open()
        consumer.stop()
        assert consumer.next() is None

    def test_close_is_idempotent_and_position_survives(self, settings):
        collection = FakeCollection(three_event_feed())
        consumer = ChangeStreamConsumer(collection, settings)
        consumer.open()
        consumer.next()

        consumer.close()
        consumer.close()

        assert collection.streams[0].close_calls == 1
        assert consumer.current_position() == make_token(0)
        assert consumer.next() is None

    def test_close_before_open(self, settings):
        consumer = ChangeStreamConsumer(FakeCollection([]), settings)
        consumer.close()
        assert consumer.current_position() is None
