"""Tag registry tests."""

import pytest

from chronicle.entitlement import EntitlementConfig
from chronicle.events import TagAssigned
from chronicle.hardening import InvalidArgument, NotAuthorized, NotFound
from chronicle.tags import TagRegistry


@pytest.fixture
def stream(registry, publisher):
    sid = registry.create_stream(publisher, "tagged", EntitlementConfig.allowlist())
    return registry.get_stream(sid)


@pytest.fixture
def published(stream, publisher, checkpoint_inputs):
    return [stream.publish(publisher, **checkpoint_inputs(label)).checkpoint_id for label in "abcd"]


def _assert_bidirectional(stream):
    assert stream.tags.verify() == []
    for tag, checkpoint_id in stream.tags.items():
        assert stream.tag_of(checkpoint_id) == tag
        assert stream.resolve_tag(stream.tag_of(checkpoint_id)) == checkpoint_id


class TestTagAssignment:

    def test_reassigning_tag_moves_it(self, stream, publisher, published):
        a, b = published[0], published[1]
        stream.assign_tag(publisher, a, "v1")
        stream.assign_tag(publisher, b, "v1")

        assert stream.resolve_tag("v1") == b
        assert stream.tag_of(a) == ""
        assert stream.tag_of(b) == "v1"
        _assert_bidirectional(stream)

    def test_retagging_checkpoint_frees_old_tag(self, stream, publisher, published):
        a = published[0]
        stream.assign_tag(publisher, a, "draft")
        stream.assign_tag(publisher, a, "final")

        assert stream.resolve_tag("draft") is None
        assert stream.resolve_tag("final") == a
        assert stream.tag_of(a) == "final"
        _assert_bidirectional(stream)

    def test_reassigning_same_pair_is_stable(self, stream, publisher, published):
        a = published[0]
        stream.assign_tag(publisher, a, "v1")
        change = stream.assign_tag(publisher, a, "v1")

        assert change.previous_checkpoint_id == ""
        assert change.previous_tag == ""
        assert stream.resolve_tag("v1") == a
        _assert_bidirectional(stream)

    def test_bidirectional_after_mixed_sequence(self, stream, publisher, published):
        a, b, c, d = published
        for checkpoint_id, tag in [
            (a, "v1"), (b, "v2"), (c, "v1"), (a, "v2"), (d, "latest"),
            (b, "latest"), (c, "v3"), (d, "v1"), (a, "v3"),
        ]:
            stream.assign_tag(publisher, checkpoint_id, tag)
            _assert_bidirectional(stream)

        resolved = [stream.resolve_tag(t) for t in ("v1", "v2", "v3", "latest")]
        present = [r for r in resolved if r is not None]
        assert len(present) == len(set(present))
        assert stream.resolve_tag("v3") == a
        assert stream.resolve_tag("v1") == d
        assert stream.resolve_tag("latest") == b

    def test_unknown_tag_and_untagged_checkpoint(self, stream, published):
        assert stream.resolve_tag("nothing") is None
        assert stream.tag_of(published[0]) == ""

    def test_empty_tag_rejected(self, stream, publisher, published):
        with pytest.raises(InvalidArgument):
            stream.assign_tag(publisher, published[0], "")

    def test_over_length_tag_rejected(self, _fresh_config, registry, publisher, checkpoint_inputs):
        _fresh_config.set("tags.max_tag_length", 4)
        sid = registry.create_stream(publisher, "short-tags", EntitlementConfig.allowlist())
        cp = registry.publish(sid, publisher, **checkpoint_inputs("a"))
        with pytest.raises(InvalidArgument):
            registry.assign_tag(sid, publisher, cp.checkpoint_id, "toolong")

    def test_unknown_checkpoint_rejected(self, stream, publisher, h):
        with pytest.raises(NotFound):
            stream.assign_tag(publisher, h("missing"), "v1")

    def test_non_publisher_rejected(self, stream, alice, published):
        with pytest.raises(NotAuthorized):
            stream.assign_tag(alice, published[0], "v1")
        assert stream.resolve_tag("v1") is None

    def test_notification_reports_displaced_pairings(self, registry, stream, publisher, published):
        a, b = published[0], published[1]
        stream.assign_tag(publisher, a, "v1")
        stream.assign_tag(publisher, b, "v2")
        seen = []
        registry.host.bus.subscribe(TagAssigned)(seen.append)

        stream.assign_tag(publisher, b, "v1")

        assert len(seen) == 1
        event = seen[0]
        assert (event.tag, event.checkpoint_id) == ("v1", b)
        assert event.previous_checkpoint_id == a
        assert event.previous_tag == "v2"


class TestPublishWithTag:

    def test_publish_assigns_tag_atomically(self, stream, publisher, checkpoint_inputs):
        a = stream.publish(publisher, tag="v1", **checkpoint_inputs("a"))
        b = stream.publish(publisher, tag="v1", **checkpoint_inputs("b"))

        assert stream.resolve_tag("v1") == b.checkpoint_id
        assert stream.tag_of(a.checkpoint_id) == ""
        _assert_bidirectional(stream)

    def test_invalid_tag_aborts_publish(self, _fresh_config, registry, publisher, checkpoint_inputs):
        _fresh_config.set("tags.max_tag_length", 3)
        sid = registry.create_stream(publisher, "strict", EntitlementConfig.allowlist())
        with pytest.raises(InvalidArgument):
            registry.publish(sid, publisher, tag="too-long", **checkpoint_inputs("a"))
        assert registry.count(sid) == 0


class TestTagRollback:

    def test_failed_call_restores_both_maps(self, host, h):
        tags = TagRegistry()
        with host.transaction() as txn:
            tags.assign(txn, h("a"), "v1")

        with pytest.raises(RuntimeError):
            with host.transaction() as txn:
                tags.assign(txn, h("b"), "v1")
                tags.assign(txn, h("a"), "v2")
                raise RuntimeError("abort")

        assert tags.resolve("v1") == h("a")
        assert tags.tag_of(h("a")) == "v1"
        assert tags.resolve("v2") is None
        assert tags.tag_of(h("b")) == ""
        assert tags.verify() == []
