"""Key envelope delivery tests."""

import pytest

from chronicle.entitlement import EntitlementConfig
from chronicle.envelope import KeyEnvelope
from chronicle.events import KeyEnvelopeDelivered
from chronicle.hardening import AlreadyDelivered, InvalidArgument, NotAuthorized, NotEntitled, NotFound


WRAPPED = bytes(range(48))
NONCE = b"\x01" * 24
SENDER = b"\xaa" * 32


@pytest.fixture
def sid(registry, publisher):
    return registry.create_stream(publisher, "paid", EntitlementConfig.counted_per_checkpoint(3))


@pytest.fixture
def cp(registry, sid, publisher, checkpoint_inputs):
    return registry.publish(sid, publisher, **checkpoint_inputs("a")).checkpoint_id


def _deliver(registry, sid, publisher, consumer, cp, wrapped=WRAPPED, nonce=NONCE, sender=SENDER):
    return registry.deliver(sid, publisher, consumer, cp, wrapped, nonce, sender)


class TestDelivery:

    def test_unentitled_consumer_rejected(self, registry, sid, cp, publisher, alice):
        with pytest.raises(NotEntitled):
            _deliver(registry, sid, publisher, alice, cp)
        assert not registry.envelope_exists(sid, alice, cp)

    def test_delivery_after_consume(self, registry, sid, cp, publisher, alice):
        registry.consume(sid, alice, cp)
        envelope = _deliver(registry, sid, publisher, alice, cp)

        assert isinstance(envelope, KeyEnvelope)
        assert registry.envelope_exists(sid, alice, cp)
        stored = registry.get_envelope(sid, alice, cp)
        assert stored.wrapped_key == WRAPPED
        assert stored.nonce == NONCE
        assert stored.sender_public_key == SENDER

    def test_envelope_lookup_normalizes_consumer(self, registry, sid, cp, publisher, alice):
        registry.consume(sid, alice, cp)
        _deliver(registry, sid, publisher, alice, cp)
        assert registry.envelope_exists(sid, "0x" + alice[2:].upper(), cp)

    def test_missing_envelope(self, registry, sid, cp, alice):
        assert registry.get_envelope(sid, alice, cp) is None
        assert registry.envelope_exists(sid, alice, cp) is False

    def test_envelopes_for_consumer(self, registry, sid, cp, publisher, alice, bob, checkpoint_inputs):
        second = registry.publish(sid, publisher, **checkpoint_inputs("b")).checkpoint_id
        for checkpoint_id in (cp, second):
            registry.consume(sid, alice, checkpoint_id)
            _deliver(registry, sid, publisher, alice, checkpoint_id)

        listed = registry.envelopes_for(sid, "0x" + alice[2:].upper())
        assert sorted(e.checkpoint_id for e in listed) == sorted([cp, second])
        assert registry.envelopes_for(sid, bob) == []

    def test_write_once(self, registry, sid, cp, publisher, alice):
        registry.consume(sid, alice, cp)
        _deliver(registry, sid, publisher, alice, cp)
        with pytest.raises(AlreadyDelivered):
            _deliver(registry, sid, publisher, alice, cp, wrapped=b"\x00" * 8)
        assert registry.get_envelope(sid, alice, cp).wrapped_key == WRAPPED

    def test_bytearray_payload_accepted(self, registry, sid, cp, publisher, alice):
        registry.consume(sid, alice, cp)
        envelope = _deliver(registry, sid, publisher, alice, cp, wrapped=bytearray(WRAPPED))
        assert envelope.wrapped_key == WRAPPED

    def test_empty_nonce_stored_verbatim(self, registry, sid, cp, publisher, alice):
        registry.consume(sid, alice, cp)
        _deliver(registry, sid, publisher, alice, cp, nonce=b"")
        assert registry.get_envelope(sid, alice, cp).nonce == b""

    def test_only_publisher_delivers(self, registry, sid, cp, alice, bob):
        registry.consume(sid, alice, cp)
        with pytest.raises(NotAuthorized):
            _deliver(registry, sid, bob, alice, cp)

    def test_unknown_checkpoint(self, registry, sid, publisher, alice, h):
        with pytest.raises(NotFound):
            _deliver(registry, sid, publisher, alice, h("missing"))


class TestPayloadBounds:

    @pytest.fixture
    def entitled(self, registry, sid, cp, alice):
        registry.consume(sid, alice, cp)
        return alice

    def test_empty_wrapped_key(self, registry, sid, cp, publisher, entitled):
        with pytest.raises(InvalidArgument):
            _deliver(registry, sid, publisher, entitled, cp, wrapped=b"")
        assert not registry.envelope_exists(sid, entitled, cp)

    def test_empty_sender_key(self, registry, sid, cp, publisher, entitled):
        with pytest.raises(InvalidArgument):
            _deliver(registry, sid, publisher, entitled, cp, sender=b"")

    def test_non_bytes_payload(self, registry, sid, cp, publisher, entitled):
        with pytest.raises(InvalidArgument):
            _deliver(registry, sid, publisher, entitled, cp, wrapped=WRAPPED.hex())

    def test_oversize_wrapped_key(self, _fresh_config, registry, publisher, alice, checkpoint_inputs):
        _fresh_config.set("envelope.max_wrapped_key_bytes", 16)
        sid = registry.create_stream(publisher, "small", EntitlementConfig.allowlist(open=True))
        cp = registry.publish(sid, publisher, **checkpoint_inputs("a")).checkpoint_id

        _deliver(registry, sid, publisher, alice, cp, wrapped=b"\x01" * 16)
        with pytest.raises(InvalidArgument):
            _deliver(registry, sid, publisher, publisher, cp, wrapped=b"\x01" * 17)


class TestEntitlementModes:

    def test_universal_consumption_covers_later_checkpoints(self, registry, publisher, alice, checkpoint_inputs):
        sid = registry.create_stream(publisher, "pass", EntitlementConfig.counted_universal(1))
        registry.consume(sid, alice)
        cp = registry.publish(sid, publisher, **checkpoint_inputs("later")).checkpoint_id
        _deliver(registry, sid, publisher, alice, cp)
        assert registry.envelope_exists(sid, alice, cp)

    def test_open_allowlist(self, registry, publisher, bob, checkpoint_inputs):
        sid = registry.create_stream(publisher, "public", EntitlementConfig.allowlist())
        cp = registry.publish(sid, publisher, **checkpoint_inputs("a")).checkpoint_id
        with pytest.raises(NotEntitled):
            _deliver(registry, sid, publisher, bob, cp)
        registry.set_open(sid, publisher, True)
        _deliver(registry, sid, publisher, bob, cp)

    def test_threshold_holder(self, registry, publisher, alice, bob, checkpoint_inputs):
        sid = registry.create_stream(publisher, "holders", EntitlementConfig.threshold(10))
        cp = registry.publish(sid, publisher, **checkpoint_inputs("a")).checkpoint_id
        _deliver(registry, sid, publisher, alice, cp)
        with pytest.raises(NotEntitled):
            _deliver(registry, sid, publisher, bob, cp)


class TestDeliveryNotification:

    def test_consumer_filtered_subscription(self, registry, publisher, alice, bob, checkpoint_inputs):
        sid = registry.create_stream(publisher, "public", EntitlementConfig.allowlist(open=True))
        cp = registry.publish(sid, publisher, **checkpoint_inputs("a")).checkpoint_id
        mine = []
        registry.host.bus.subscribe(KeyEnvelopeDelivered, filter_func=lambda e: e.consumer == alice)(mine.append)

        _deliver(registry, sid, publisher, bob, cp)
        _deliver(registry, sid, publisher, alice, cp)

        assert len(mine) == 1
        event = mine[0]
        assert event.stream_id == sid
        assert event.checkpoint_id == cp
        assert bytes.fromhex(event.wrapped_key) == WRAPPED
        assert bytes.fromhex(event.nonce) == NONCE
        assert bytes.fromhex(event.sender_public_key) == SENDER

    def test_failed_delivery_emits_nothing(self, registry, sid, cp, publisher, alice):
        seen = []
        registry.host.bus.subscribe(KeyEnvelopeDelivered)(seen.append)
        with pytest.raises(NotEntitled):
            _deliver(registry, sid, publisher, alice, cp)
        assert seen == []
