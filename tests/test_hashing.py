"""Tests for domain-separated identity hashing."""

import hashlib
import re

import pytest

from engine.hashing import (
    hash_chain,
    hash_graph,
    hash_identity,
    hash_notification,
    hash_report,
    short_hash,
)

HEX64 = re.compile(r"^[0-9a-f]{64}$")


class TestDomainSeparation:

    @pytest.mark.parametrize("raw_id", ["alice", "user_2abcDEF", "", "ünïcode-id"])
    def test_domains_never_collide(self, raw_id):
        hashes = [hash_graph(raw_id), hash_notification(raw_id), hash_chain(raw_id), hash_report(raw_id)]
        assert len(set(hashes)) == 4

    @pytest.mark.parametrize("raw_id", ["alice", "bob", "x" * 128])
    def test_hashes_are_64_lowercase_hex(self, raw_id):
        for value in (hash_graph(raw_id), hash_notification(raw_id), hash_chain(raw_id), hash_report(raw_id)):
            assert HEX64.match(value)

    def test_graph_hash_is_unsalted_sha256(self):
        # Devices compute this value themselves during discovery
        assert hash_graph("alice") == hashlib.sha256(b"alice").hexdigest()

    def test_salts_are_prefixes(self):
        assert hash_notification("alice") == hashlib.sha256(b"notification:alice").hexdigest()
        assert hash_chain("alice") == hashlib.sha256(b"chain:alice").hexdigest()
        assert hash_report("alice") == hashlib.sha256(b"report:alice").hexdigest()

    def test_deterministic(self):
        assert hash_identity("notification:", "bob") == hash_notification("bob")
        assert hash_graph("bob") == hash_graph("bob")

    def test_different_users_differ(self):
        assert hash_graph("alice") != hash_graph("bob")


class TestShortHash:

    def test_truncates(self):
        assert short_hash("abcdef0123456789") == "abcdef01..."

    def test_none(self):
        assert short_hash(None) == "<none>"
        assert short_hash("") == "<none>"
