"""Tests for the IP / public key blacklist."""

import threading

import pytest

from peerlogger.common.crypto import private_key_to_public_key
from peerlogger.common.enr import Node
from peerlogger.crawler.blacklist import BlacklistFilter, BlacklistStats, normalize_pubkey

from tests.fixtures.keys import ALICE_PRIVATE_KEY, BOB_PRIVATE_KEY, make_node

ALICE_PUB = private_key_to_public_key(ALICE_PRIVATE_KEY)


class TestIPRules:
    def test_single_ip(self):
        bl = BlacklistFilter(["10.0.0.1"])
        assert bl.is_ip_blacklisted("10.0.0.1")
        assert not bl.is_ip_blacklisted("10.0.0.2")

    def test_cidr_boundaries(self):
        bl = BlacklistFilter(["192.168.1.0/24"])
        assert bl.is_ip_blacklisted("192.168.1.0")
        assert bl.is_ip_blacklisted("192.168.1.255")
        assert not bl.is_ip_blacklisted("192.168.0.255")
        assert not bl.is_ip_blacklisted("192.168.2.0")

    def test_cidr_with_host_bits(self):
        bl = BlacklistFilter(["10.1.2.3/16"])
        assert bl.is_ip_blacklisted("10.1.200.1")

    def test_ipv6(self):
        bl = BlacklistFilter(["2001:db8::/32", "fe80::1"])
        assert bl.is_ip_blacklisted("2001:db8:1::5")
        assert bl.is_ip_blacklisted("fe80::1")
        assert not bl.is_ip_blacklisted("2001:db9::1")

    def test_ipv4_mapped(self):
        bl = BlacklistFilter(["10.0.0.0/8"])
        assert bl.is_ip_blacklisted("::ffff:10.2.3.4")

    def test_malformed_entries_skipped(self, caplog):
        bl = BlacklistFilter(["not-an-ip", "10.0.0.0/99", "", "10.0.0.1"])
        assert bl.get_stats() == BlacklistStats(ips=1, networks=0, pubkeys=0)
        assert bl.is_ip_blacklisted("10.0.0.1")
        assert "not-an-ip" in caplog.text

    def test_unparsable_input_fail_open(self):
        bl = BlacklistFilter(["10.0.0.0/8"])
        assert not bl.is_ip_blacklisted("bogus")
        assert not bl.is_ip_blacklisted("")

    def test_unparsable_input_fail_closed(self):
        bl = BlacklistFilter(["10.0.0.0/8"], fail_closed=True)
        assert bl.is_ip_blacklisted("bogus")

    def test_empty(self):
        bl = BlacklistFilter()
        assert not bl.is_ip_blacklisted("10.0.0.1")
        assert bl.get_stats() == BlacklistStats(0, 0, 0)


class TestPubkeyRules:
    def test_normalize(self):
        assert normalize_pubkey(" 0xABCD ") == "abcd"
        assert normalize_pubkey("abcd") == "abcd"

    def test_match_case_and_prefix(self):
        bl = BlacklistFilter(pubkey_list=["0x" + ALICE_PUB.hex().upper()])
        assert bl.is_pubkey_blacklisted(ALICE_PUB.hex())
        assert bl.is_pubkey_blacklisted("0x" + ALICE_PUB.hex())
        assert not bl.is_pubkey_blacklisted("")

    def test_node_by_pubkey(self, alice_node, bob_node):
        bl = BlacklistFilter(pubkey_list=[ALICE_PUB.hex()])
        assert bl.is_node_blacklisted(alice_node)
        assert not bl.is_node_blacklisted(bob_node)

    def test_node_by_id(self, alice_node):
        bl = BlacklistFilter(pubkey_list=[alice_node.id_hex])
        assert bl.is_node_blacklisted(alice_node)

    def test_node_by_ip(self, alice_node):
        bl = BlacklistFilter([alice_node.ip])
        assert bl.is_node_blacklisted(alice_node)

    def test_node_without_ip(self):
        bl = BlacklistFilter(["10.0.0.0/8"], fail_closed=True)
        assert not bl.is_node_blacklisted(Node(pubkey=ALICE_PUB))


class TestReload:
    def test_reload_replaces_rules(self):
        bl = BlacklistFilter(["10.0.0.1"], ["aa"])
        bl.reload(["10.0.0.2"], [])
        assert not bl.is_ip_blacklisted("10.0.0.1")
        assert bl.is_ip_blacklisted("10.0.0.2")
        assert not bl.is_pubkey_blacklisted("aa")
        assert bl.get_stats() == BlacklistStats(ips=1, networks=0, pubkeys=0)

    def test_reload_single_to_range(self):
        bl = BlacklistFilter(["192.168.1.1"])
        bl.reload(["10.0.0.0/8"], [])
        assert not bl.is_ip_blacklisted("192.168.1.1")
        assert bl.is_ip_blacklisted("10.0.0.1")

    def test_reload_skips_malformed(self):
        bl = BlacklistFilter()
        bl.reload(["not-an-ip", "bad/cidr", "10.0.0.0/24"], [])
        assert bl.get_stats() == BlacklistStats(ips=0, networks=1, pubkeys=0)
        assert bl.is_ip_blacklisted("10.0.0.255")
        assert not bl.is_ip_blacklisted("10.0.1.0")

    def test_reload_to_empty(self):
        bl = BlacklistFilter(["10.0.0.0/8"])
        bl.reload([], [])
        assert not bl.is_ip_blacklisted("10.1.1.1")

    def test_concurrent_readers_see_whole_snapshots(self):
        """Readers never observe a mix of two rule sets."""
        set_a = (["10.0.0.1", "10.0.0.2"], [])
        set_b = (["10.0.0.3", "10.0.0.4"], [])
        bl = BlacklistFilter(*set_a)
        stop = threading.Event()
        errors = []

        def reader():
            while not stop.is_set():
                rules = bl._rules
                a = rules.match_ip("10.0.0.1") and rules.match_ip("10.0.0.2")
                b = rules.match_ip("10.0.0.3") and rules.match_ip("10.0.0.4")
                if a == b:
                    errors.append("mixed snapshot")
                if bl.get_stats().ips != 2:
                    errors.append("bad stats")

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for i in range(200):
            bl.reload(*(set_b if i % 2 == 0 else set_a))
        stop.set()
        for t in threads:
            t.join()
        assert errors == []

    def test_concurrent_lookups_during_reload(self):
        bl = BlacklistFilter(["10.0.0.0/8"])
        node = make_node(BOB_PRIVATE_KEY, ip="10.5.5.5")
        results = []
        stop = threading.Event()

        def reader():
            while True:
                results.append(bl.is_node_blacklisted(node))
                if stop.is_set():
                    break

        t = threading.Thread(target=reader)
        t.start()
        for _ in range(100):
            bl.reload(["10.0.0.0/8", "192.168.0.0/16"], [])
        stop.set()
        t.join()
        assert results and all(results)
