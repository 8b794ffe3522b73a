"""Tests for the node registry: set semantics, scoring and snapshots."""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from peerlogger.common.enr import Node
from peerlogger.common.types import ClientInfo
from peerlogger.crawler.registry import (
    CheckResult,
    IntegrityError,
    NodeRegistry,
    PeerRecord,
    SnapshotError,
    load_nodes_json,
)

from tests.fixtures.keys import ALICE_PRIVATE_KEY, make_node, node_key


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _registry_with_scores(scores):
    """Registry with one node per score, keys 1..n."""
    registry = NodeRegistry()
    for i, score in enumerate(scores, start=1):
        node = make_node(node_key(i), ip=f"10.0.0.{i}")
        registry.add(node)
        registry._records[node.id_hex].score = score
    return registry


# ===================================================================
# Set semantics
# ===================================================================

class TestAdd:
    def test_add_new(self, registry, alice_node):
        registry.add(alice_node)
        assert len(registry) == 1
        assert alice_node.id_hex in registry
        record = registry.get(alice_node.id_hex)
        assert record.seq == alice_node.seq
        assert record.score == 0

    def test_add_is_idempotent(self, registry, alice_node):
        registry.add(alice_node)
        registry.add(alice_node)
        assert len(registry) == 1

    def test_add_many(self, registry, alice_node, bob_node, charlie_node):
        registry.add(alice_node, bob_node, charlie_node)
        assert len(registry) == 3

    def test_add_keeps_score_and_timestamps(self, registry, alice_node):
        registry.add(alice_node)
        registry.update_score(alice_node.id_hex, True, now=T0)
        newer = make_node(ALICE_PRIVATE_KEY, ip="10.9.9.9", seq=2)
        registry.add(newer)
        record = registry.get(alice_node.id_hex)
        assert record.seq == 2
        assert record.node.ip == "10.9.9.9"
        assert record.score == 1
        assert record.first_response == T0

    def test_stale_record_ignored(self, registry):
        newer = make_node(ALICE_PRIVATE_KEY, ip="10.0.0.2", seq=5)
        older = make_node(ALICE_PRIVATE_KEY, ip="10.0.0.1", seq=4)
        registry.add(newer)
        registry.add(older)
        assert registry.get(newer.id_hex).node.ip == "10.0.0.2"

    def test_add_order_independent(self):
        older = make_node(ALICE_PRIVATE_KEY, ip="10.0.0.1", seq=1)
        newer = make_node(ALICE_PRIVATE_KEY, ip="10.0.0.2", seq=2)
        a, b = NodeRegistry(), NodeRegistry()
        a.add(older, newer)
        b.add(newer, older)
        assert a.to_json() == b.to_json()

    def test_nodes_sorted_by_id(self):
        registry = _registry_with_scores([0, 0, 0, 0])
        ids = [n.id_hex for n in registry.nodes()]
        assert ids == sorted(ids)

    def test_all_records_are_copies(self, registry, alice_node):
        registry.add(alice_node)
        registry.all_records()[0].score = 99
        assert registry.get(alice_node.id_hex).score == 0


class TestTopN:
    def test_top_n_by_score(self):
        registry = _registry_with_scores([1, 5, 3, 4])
        top = registry.top_n(2)
        assert sorted(r.score for r in top.all_records()) == [4, 5]

    def test_top_n_larger_than_set(self):
        registry = _registry_with_scores([1, 2])
        top = registry.top_n(10)
        assert len(top) == 2
        assert top is not registry

    def test_top_n_zero(self):
        assert len(_registry_with_scores([1, 2]).top_n(0)) == 0

    def test_ties_resolve_by_id(self):
        registry = _registry_with_scores([2, 2, 2, 2])
        expected = sorted(r.id for r in registry.all_records())[:2]
        assert sorted(r.id for r in registry.top_n(2).all_records()) == expected

    def test_top_n_does_not_alias(self):
        registry = _registry_with_scores([1])
        top = registry.top_n(1)
        top.update_score(top.nodes()[0].id_hex, True)
        assert registry.all_records()[0].score == 1


class TestVerify:
    def test_valid(self):
        _registry_with_scores([1, 2]).verify()

    def test_id_mismatch(self, alice_node, bob_node):
        registry = NodeRegistry({alice_node.id_hex: PeerRecord(node=bob_node, seq=bob_node.seq)})
        with pytest.raises(IntegrityError) as exc:
            registry.verify()
        assert exc.value.node_id == alice_node.id_hex

    def test_seq_mismatch(self, alice_node):
        registry = NodeRegistry({alice_node.id_hex: PeerRecord(node=alice_node, seq=7)})
        with pytest.raises(IntegrityError):
            registry.verify()


# ===================================================================
# Scoring
# ===================================================================

class TestScoring:
    def test_success_increments(self, registry, alice_node):
        registry.add(alice_node)
        for _ in range(3):
            registry.update_score(alice_node.id_hex, True, now=T0)
        record = registry.get(alice_node.id_hex)
        assert record.score == 3
        assert record.last_response == T0
        assert record.last_check == T0

    def test_failure_halves(self, registry, alice_node):
        registry.add(alice_node)
        registry._records[alice_node.id_hex].score = 7
        registry.update_score(alice_node.id_hex, False, now=T0)
        assert registry.get(alice_node.id_hex).score == 3
        registry.update_score(alice_node.id_hex, False, now=T0)
        registry.update_score(alice_node.id_hex, False, now=T0)
        registry.update_score(alice_node.id_hex, False, now=T0)
        assert registry.get(alice_node.id_hex).score == 0

    def test_first_response_set_once(self, registry, alice_node):
        registry.add(alice_node)
        registry.update_score(alice_node.id_hex, True, now=T0)
        later = T0 + timedelta(hours=1)
        registry.update_score(alice_node.id_hex, True, now=later)
        record = registry.get(alice_node.id_hex)
        assert record.first_response == T0
        assert record.last_response == later

    def test_failure_updates_last_check_only(self, registry, alice_node):
        registry.add(alice_node)
        registry.update_score(alice_node.id_hex, False, now=T0)
        record = registry.get(alice_node.id_hex)
        assert record.last_check == T0
        assert record.last_response is None

    def test_client_info_kept(self, registry, alice_node):
        registry.add(alice_node)
        info = ClientInfo(client_type="Geth/v1.13.0")
        registry.update_score(alice_node.id_hex, True, now=T0, info=info)
        registry.update_score(alice_node.id_hex, True, now=T0)
        assert registry.get(alice_node.id_hex).info == info

    def test_unknown_node(self, registry):
        assert registry.update_score("00" * 32, True) is None


class TestApplyChecks:
    def test_new_node_admitted_on_success(self, registry, alice_node):
        alive = registry.apply_checks([CheckResult(alice_node.id_hex, True, node=alice_node)], now=T0)
        assert alice_node.id_hex in registry
        assert [r.id for r in alive] == [alice_node.id_hex]
        assert registry.get(alice_node.id_hex).score == 1

    def test_new_node_not_admitted_on_failure(self, registry, alice_node):
        alive = registry.apply_checks([CheckResult(alice_node.id_hex, False, error="timeout")], now=T0)
        assert alive == []
        assert len(registry) == 0

    def test_mixed_round(self, registry, alice_node, bob_node):
        registry.add(alice_node, bob_node)
        registry._records[bob_node.id_hex].score = 4
        fresh = make_node(ALICE_PRIVATE_KEY, ip="10.1.1.1", seq=2)
        alive = registry.apply_checks([
            CheckResult(alice_node.id_hex, True, node=fresh),
            CheckResult(bob_node.id_hex, False),
        ], now=T0)
        assert [r.id for r in alive] == [alice_node.id_hex]
        assert registry.get(alice_node.id_hex).node.ip == "10.1.1.1"
        assert registry.get(alice_node.id_hex).seq == 2
        assert registry.get(bob_node.id_hex).score == 2
        registry.verify()


# ===================================================================
# Snapshots
# ===================================================================

class TestSnapshot:
    def test_roundtrip(self, tmp_path, registry, alice_node, bob_node):
        registry.add(alice_node, bob_node)
        registry.update_score(alice_node.id_hex, True, now=T0,
                              info=ClientInfo(client_type="Geth/v1.13.0", network_id=1))
        registry.update_score(bob_node.id_hex, False, now=T0, too_many_peers=True)
        path = tmp_path / "nodes.json"
        registry.write_nodes_json(str(path))

        loaded = load_nodes_json(str(path))
        assert loaded.to_json() == registry.to_json()
        record = loaded.get(alice_node.id_hex)
        assert record.score == 1
        assert record.first_response == T0
        assert record.info.client_type == "Geth/v1.13.0"
        assert loaded.get(bob_node.id_hex).too_many_peers

    def test_format(self, tmp_path, registry, alice_node):
        registry.add(alice_node)
        path = tmp_path / "nodes.json"
        registry.write_nodes_json(str(path))
        data = json.loads(path.read_text())
        entry = data[alice_node.id_hex]
        assert entry["seq"] == alice_node.seq
        assert entry["record"].startswith("enr:")
        assert "score" not in entry
        assert "clientInfo" not in entry
        assert "tooManyPeers" not in entry

    def test_enode_records(self, tmp_path):
        registry = NodeRegistry()
        node = make_node(ALICE_PRIVATE_KEY)
        unsigned = Node(pubkey=node.pubkey, ip="10.0.0.5", udp_port=30303, tcp_port=30303)
        registry.add(unsigned)
        path = tmp_path / "nodes.json"
        registry.write_nodes_json(str(path))
        loaded = load_nodes_json(str(path))
        assert loaded.get(unsigned.id_hex).node.text().startswith("enode://")

    def test_failed_write_keeps_previous_file(self, tmp_path, monkeypatch, registry, alice_node, bob_node):
        registry.add(alice_node)
        path = tmp_path / "nodes.json"
        registry.write_nodes_json(str(path))
        before = path.read_text()

        def fail_fsync(fd):
            raise OSError("no space left on device")

        monkeypatch.setattr("peerlogger.crawler.registry.os.fsync", fail_fsync)
        registry.add(bob_node)
        with pytest.raises(OSError):
            registry.write_nodes_json(str(path))
        assert path.read_text() == before
        assert load_nodes_json(str(path)).get(alice_node.id_hex) is not None
        assert sorted(p.name for p in tmp_path.iterdir()) == ["nodes.json"]

    def test_stdout(self, capsys, registry, alice_node):
        registry.add(alice_node)
        registry.write_nodes_json("-")
        out = capsys.readouterr().out
        assert alice_node.id_hex in json.loads(out)

    def test_unreadable(self, tmp_path):
        with pytest.raises(SnapshotError):
            load_nodes_json(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "nodes.json"
        path.write_text("[1, 2")
        with pytest.raises(SnapshotError):
            load_nodes_json(str(path))

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "nodes.json"
        path.write_text("[]")
        with pytest.raises(SnapshotError):
            load_nodes_json(str(path))

    def test_bad_record(self, tmp_path):
        path = tmp_path / "nodes.json"
        path.write_text(json.dumps({"ab": {"seq": 1, "record": "enr:garbage"}}))
        with pytest.raises(SnapshotError):
            load_nodes_json(str(path))

    def test_wrong_key_fails_verification(self, tmp_path, alice_node):
        path = tmp_path / "nodes.json"
        path.write_text(json.dumps({"00" * 32: {"seq": alice_node.seq, "record": alice_node.to_enr()}}))
        with pytest.raises(IntegrityError):
            load_nodes_json(str(path))


# ===================================================================
# Thread safety
# ===================================================================

class TestConcurrency:
    def test_snapshot_during_updates(self):
        registry = _registry_with_scores([0] * 8)
        ids = [n.id_hex for n in registry.nodes()]
        errors = []
        stop = threading.Event()

        def writer():
            for _ in range(200):
                registry.apply_checks([CheckResult(i, True) for i in ids])
            stop.set()

        def reader():
            while not stop.is_set():
                try:
                    scores = {r["score"] if "score" in r else 0 for r in registry.to_json().values()}
                    # One apply_checks call moves every node together
                    if len(scores) != 1:
                        errors.append(scores)
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
