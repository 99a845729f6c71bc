"""State snapshot and restore tests."""

import copy
import json
from decimal import Decimal

import pytest

from chronicle.entitlement import EntitlementConfig
from chronicle.hardening import AlreadyConsumed
from chronicle.store import STATE_FORMAT, StateError, load_state, restore, save_state, snapshot


@pytest.fixture
def populated(registry, publisher, alice, checkpoint_inputs):
    paid = registry.create_stream(publisher, "paid", EntitlementConfig.counted_per_checkpoint(4))
    a = registry.publish(paid, publisher, tag="v1", **checkpoint_inputs("a")).checkpoint_id
    registry.publish(paid, publisher, tag="v2", **checkpoint_inputs("b"))
    registry.consume(paid, alice, a)
    registry.deliver(paid, publisher, alice, a, b"\x10" * 40, b"\x20" * 24, b"\x30" * 32)

    members = registry.create_stream(publisher, "members", EntitlementConfig.allowlist())
    registry.allow(members, publisher, alice)
    return registry, paid, members


class TestSnapshot:

    def test_document_shape(self, populated):
        registry, paid, _ = populated
        doc = snapshot(registry)

        assert doc["format"] == STATE_FORMAT
        assert doc["registry"]["counter"] == 2
        assert doc["host"]["height"] == registry.host.height
        assert [s["stream_id"] for s in doc["streams"]][0] == paid
        assert doc["balances"]

    def test_snapshot_is_json_serializable(self, populated):
        registry, _, _ = populated
        json.dumps(snapshot(registry))


class TestRestore:

    def test_round_trip_preserves_reads(self, populated, clock, alice):
        registry, paid, members = populated
        restored = restore(snapshot(registry), clock=clock)

        assert restored.head(paid) == registry.head(paid)
        assert restored.count(paid) == 2
        assert restored.resolve_tag(paid, "v2") == registry.resolve_tag(paid, "v2")
        a = registry.get_by_index(paid, 0).checkpoint_id
        assert restored.may_consume(paid, alice, a)
        assert restored.get_envelope(paid, alice, a) == registry.get_envelope(paid, alice, a)
        assert restored.may_consume(members, alice)
        assert restored.burn.balance_of(alice) == Decimal("96")
        assert restored.verify() == {}
        assert snapshot(restored) == snapshot(registry)

    def test_restored_ledger_keeps_going(self, populated, clock, publisher, alice, checkpoint_inputs):
        registry, paid, members = populated
        restored = restore(snapshot(registry), clock=clock)
        a = registry.get_by_index(paid, 0).checkpoint_id

        clock.advance(10)
        c = restored.publish(paid, publisher, **checkpoint_inputs("c"))
        assert c.predecessor_id == registry.head(paid)
        assert c.sequence == registry.host.height + 1
        assert c.index == 2

        with pytest.raises(AlreadyConsumed):
            restored.consume(paid, alice, a)

        third = restored.create_stream(publisher, "third", EntitlementConfig.allowlist())
        assert third not in (paid, members)
        assert restored.counter == 3

    def test_schema_violation_rejected(self, populated, clock):
        registry, _, _ = populated
        doc = snapshot(registry)
        doc["format"] = "something-else"
        doc["streams"][0]["checkpoints"][0]["index"] = -1

        with pytest.raises(StateError) as exc:
            restore(doc, clock=clock)
        assert any(e.startswith("$.format") for e in exc.value.errors)
        assert any("checkpoints[0].index" in e for e in exc.value.errors)

    def test_tampered_checkpoint_rejected(self, populated, clock, h):
        registry, _, _ = populated
        doc = copy.deepcopy(snapshot(registry))
        doc["streams"][0]["checkpoints"][0]["state_commitment"] = h("forged")

        with pytest.raises(StateError) as exc:
            restore(doc, clock=clock)
        assert any("identifier mismatch" in e for e in exc.value.errors)

    def test_broken_linkage_rejected(self, populated, clock):
        registry, _, _ = populated
        doc = snapshot(registry)
        doc["streams"][0]["checkpoints"].reverse()

        with pytest.raises(StateError):
            restore(doc, clock=clock)

    def test_tag_on_unknown_checkpoint_rejected(self, populated, clock, h):
        registry, _, _ = populated
        doc = snapshot(registry)
        doc["streams"][0]["tags"]["ghost"] = h("ghost")

        with pytest.raises(StateError):
            restore(doc, clock=clock)

    def test_duplicate_stream_rejected(self, populated, clock):
        registry, _, _ = populated
        doc = snapshot(registry)
        doc["streams"].append(copy.deepcopy(doc["streams"][0]))

        with pytest.raises(StateError) as exc:
            restore(doc, clock=clock)
        assert any("duplicate" in e for e in exc.value.errors)

    @pytest.mark.parametrize("field", ["height", "last_timestamp"])
    def test_host_behind_recorded_history_rejected(self, populated, clock, field):
        registry, _, _ = populated
        doc = snapshot(registry)
        doc["host"][field] = 0

        with pytest.raises(StateError) as exc:
            restore(doc, clock=clock)
        assert any(e.startswith(f"host: {field}") for e in exc.value.errors)

    def test_host_ahead_of_history_accepted(self, populated, clock, publisher, checkpoint_inputs):
        registry, paid, _ = populated
        doc = snapshot(registry)
        doc["host"]["height"] += 10
        doc["host"]["last_timestamp"] += 10

        restored = restore(doc, clock=clock)
        c = restored.publish(paid, publisher, **checkpoint_inputs("c"))
        assert c.sequence == doc["host"]["height"] + 1
        assert restore(snapshot(restored), clock=clock).verify() == {}

    def test_counter_behind_stream_count_rejected(self, populated, clock):
        registry, _, _ = populated
        doc = snapshot(registry)
        doc["registry"]["counter"] = 0

        with pytest.raises(StateError) as exc:
            restore(doc, clock=clock)
        assert any(e.startswith("registry: counter 0") for e in exc.value.errors)


class TestFiles:

    def test_save_and_load(self, populated, clock, tmp_path):
        registry, paid, _ = populated
        path = save_state(registry, tmp_path / "state" / "ledger.json")

        assert [p.name for p in path.parent.iterdir()] == ["ledger.json"]
        loaded = load_state(path, clock=clock)
        assert loaded.head(paid) == registry.head(paid)

    def test_default_path_from_config(self, _fresh_config, populated, clock, tmp_path):
        registry, paid, _ = populated
        _fresh_config.set("store.state_path", str(tmp_path / "default.json"))
        save_state(registry)
        assert load_state(clock=clock).count(paid) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(StateError):
            load_state(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateError):
            load_state(path)
