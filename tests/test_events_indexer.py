"""
Notification feed tests.

An off-chain index fed only by notifications must reproduce the ledger's own
read views, both live and when replayed from the event store.
"""

import pytest

from chronicle.entitlement import EntitlementConfig
from chronicle.events import (
    CheckpointPublished,
    Event,
    EventBus,
    EventStore,
    KeyEnvelopeDelivered,
    StreamCreated,
)
from chronicle.hardening import NotAuthorized
from chronicle.indexer import ChainIndex


def _run_workload(registry, publisher, alice, bob, checkpoint_inputs):
    paid = registry.create_stream(publisher, "paid", EntitlementConfig.counted_per_checkpoint(2))
    members = registry.create_stream(publisher, "members", EntitlementConfig.allowlist())

    a = registry.publish(paid, publisher, tag="v1", **checkpoint_inputs("a")).checkpoint_id
    b = registry.publish(paid, publisher, **checkpoint_inputs("b")).checkpoint_id
    registry.assign_tag(paid, publisher, b, "v1")
    registry.assign_tag(paid, publisher, a, "old")
    registry.update_ciphertext_pointer(paid, publisher, a, "ar://moved")
    registry.consume(paid, alice, a)
    registry.deliver(paid, publisher, alice, a, b"\x01" * 32, b"\x02" * 12, b"\x03" * 32)

    m = registry.publish(members, publisher, **checkpoint_inputs("m")).checkpoint_id
    registry.allow_many(members, publisher, [alice, bob])
    registry.disallow(members, publisher, bob)
    registry.set_open(members, publisher, True)
    registry.transfer_publisher(members, publisher, alice)
    registry.deliver(members, alice, bob, m, b"\x04" * 32, b"", b"\x05" * 32)
    return paid, members


def _assert_matches_ledger(index, registry):
    for stream in registry.streams():
        view = index.view(stream.stream_id)
        assert view.publisher == stream.publisher
        assert view.head == stream.head
        assert view.count == stream.count
        assert view.order == [c.checkpoint_id for c in stream.chain]
        for checkpoint in stream.chain:
            assert view.checkpoints[checkpoint.checkpoint_id] == checkpoint.to_dict()
        assert view.tags == dict(stream.tags.items())
        assert view.tag_of == {cid: tag for tag, cid in stream.tags.items()}
        assert sorted(view.consumed) == stream.entitlement.consumers()
        assert sorted(view.roster) == stream.entitlement.roster()
        assert view.open == stream.entitlement.open
        assert set(view.deliveries) == {(e.consumer, e.checkpoint_id) for e in stream.envelopes}


class TestChainIndex:

    def test_live_index_matches_ledger(self, registry, publisher, alice, bob, checkpoint_inputs):
        index = ChainIndex()
        registry.host.bus.subscribe()(index)

        paid, _ = _run_workload(registry, publisher, alice, bob, checkpoint_inputs)

        _assert_matches_ledger(index, registry)
        a = registry.get_by_index(paid, 0).checkpoint_id
        assert index.view(paid).pointer_of(a) == "ar://moved"

    def test_replay_from_event_store(self, registry, publisher, alice, bob, checkpoint_inputs):
        _run_workload(registry, publisher, alice, bob, checkpoint_inputs)

        index = ChainIndex()
        index.rebuild(registry.events)

        _assert_matches_ledger(index, registry)
        assert index.position == registry.events.total_events

    def test_rebuild_is_idempotent(self, registry, publisher, alice, bob, checkpoint_inputs):
        _run_workload(registry, publisher, alice, bob, checkpoint_inputs)
        index = ChainIndex()
        index.rebuild(registry.events)
        index.rebuild(registry.events, batch_size=3)
        _assert_matches_ledger(index, registry)

    def test_rejected_calls_leave_no_trace(self, registry, publisher, alice, checkpoint_inputs):
        sid = registry.create_stream(publisher, "s", EntitlementConfig.allowlist())
        before = registry.events.total_events
        with pytest.raises(NotAuthorized):
            registry.publish(sid, alice, **checkpoint_inputs("a"))
        assert registry.events.total_events == before


class TestEventStore:

    def test_one_notification_per_successful_call(self, registry, publisher, checkpoint_inputs):
        sid = registry.create_stream(publisher, "s", EntitlementConfig.allowlist())
        registry.publish(sid, publisher, **checkpoint_inputs("a"))
        events = registry.events.read_stream(sid)
        assert [e.event_type for e in events] == ["StreamCreated", "CheckpointPublished"]
        assert registry.events.get_stream_version(sid) == 2

    def test_publish_with_tag_emits_both(self, registry, publisher, checkpoint_inputs):
        sid = registry.create_stream(publisher, "s", EntitlementConfig.allowlist())
        registry.publish(sid, publisher, tag="v1", **checkpoint_inputs("a"))
        types = [e.event_type for e in registry.events.read_stream(sid, from_version=1)]
        assert types == ["CheckpointPublished", "TagAssigned"]

    def test_positions_are_global(self):
        store = EventStore()
        store.record(Event(stream_id="x"))
        store.record(Event(stream_id="y"))
        records = store.read_all()
        assert [r.position for r in records] == [1, 2]
        assert [r.version for r in records] == [1, 1]
        assert sorted(store.get_stream_ids()) == ["x", "y"]


class TestEventSerialization:

    def test_dict_form_dispatches_on_type(self, registry, publisher, checkpoint_inputs):
        sid = registry.create_stream(publisher, "s", EntitlementConfig.counted_universal(1))
        registry.publish(sid, publisher, **checkpoint_inputs("a"))
        for event in registry.events.read_stream(sid):
            restored = Event.from_dict(event.to_dict())
            assert type(restored) is type(event)
            assert restored == event
            assert restored.digest() == event.digest()

    def test_published_event_carries_full_record(self, registry, publisher, checkpoint_inputs):
        sid = registry.create_stream(publisher, "s", EntitlementConfig.allowlist())
        checkpoint = registry.publish(sid, publisher, **checkpoint_inputs("a"))
        event = registry.events.read_stream(sid)[-1]
        assert isinstance(event, CheckpointPublished)
        assert event.checkpoint_id == checkpoint.checkpoint_id
        assert event.predecessor_id == checkpoint.predecessor_id
        assert event.publication_sequence == checkpoint.sequence
        assert event.publisher == publisher

    def test_json_form(self):
        event = StreamCreated(stream_id="s", publisher="0x" + "1" * 40, name="n")
        assert '"event_type": "StreamCreated"' in event.to_json()


class TestHandlerIsolation:

    def test_failing_handler_does_not_affect_ledger(self, registry, publisher, alice, checkpoint_inputs):
        def broken(event):
            raise RuntimeError("indexer down")

        registry.host.bus.subscribe(KeyEnvelopeDelivered, CheckpointPublished)(broken)
        sid = registry.create_stream(publisher, "s", EntitlementConfig.allowlist(open=True))
        cp = registry.publish(sid, publisher, **checkpoint_inputs("a")).checkpoint_id
        registry.deliver(sid, publisher, alice, cp, b"\x01", b"", b"\x02")

        assert registry.count(sid) == 1
        assert registry.envelope_exists(sid, alice, cp)
        assert registry.host.bus.metrics["error_count"] == 2
        assert registry.events.get_stream_version(sid) == 3

    def test_error_callback(self):
        errors = []
        bus = EventBus(on_error=errors.append)
        bus.subscribe()(lambda e: 1 / 0)
        bus.publish(Event(stream_id="s"))
        assert len(errors) == 1
        assert isinstance(errors[0].cause, ZeroDivisionError)
