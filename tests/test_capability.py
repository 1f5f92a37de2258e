"""
Tests for capability helpers: root capabilities, timestamps, attenuation.
"""

import pytest

from zcapauth.capability import (
    canonicalize,
    compute_capability_chain,
    create_root_capability,
    format_timestamp,
    get_allowed_actions,
    get_controllers,
    get_root_capability_id,
    get_root_invocation_target,
    is_action_allowed,
    is_action_subset,
    is_root_capability,
    is_target_within,
    parse_timestamp,
    strip_proof,
)
from zcapauth.config import get_profile_path
from zcapauth.errors import ValidationError


class TestRootCapabilities:
    """Tests for root capability synthesis."""

    def test_root_id_encodes_target(self):
        root_id = get_root_capability_id("https://example.com/profiles/did:key:z1")
        assert root_id == "urn:zcap:root:https%3A%2F%2Fexample.com%2Fprofiles%2Fdid%3Akey%3Az1"

    def test_root_id_round_trips_target(self):
        target = "https://example.com/profiles/did%3Akey%3Az1"
        assert get_root_invocation_target(get_root_capability_id(target)) == target

    def test_non_root_id_rejected(self):
        with pytest.raises(ValidationError):
            get_root_invocation_target("urn:uuid:1234")

    def test_create_root_capability(self):
        root = create_root_capability(controller="did:key:z1", invocation_target="https://a.example")
        assert root["id"] == get_root_capability_id("https://a.example")
        assert root["controller"] == "did:key:z1"
        assert "proof" not in root
        assert "expires" not in root
        assert is_root_capability(root)

    def test_root_with_proof_is_not_root(self):
        root = create_root_capability(controller="did:key:z1", invocation_target="https://a.example")
        assert not is_root_capability({**root, "proof": {}})

    def test_profile_path_encodes_profile_id(self):
        path = get_profile_path("did:key:z6Mk", "https://profiles.example/", "/profiles")
        assert path == "https://profiles.example/profiles/did%3Akey%3Az6Mk"


class TestTimestamps:
    """Tests for timestamp formatting and parsing."""

    def test_format_has_millisecond_precision(self):
        assert format_timestamp(1700000000123) == "2023-11-14T22:13:20.123Z"

    def test_parse_round_trip(self):
        assert parse_timestamp(format_timestamp(1700000000123)) == 1700000000123

    def test_parse_without_milliseconds(self):
        assert parse_timestamp("2023-11-14T22:13:20Z") == 1700000000000

    def test_parse_short_fraction(self):
        assert parse_timestamp("2023-11-14T22:13:20.5Z") == 1700000000500
        assert parse_timestamp("2023-11-14T22:13:20.25Z") == 1700000000250

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12])
    def test_parse_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_timestamp(value)


class TestAttenuation:
    """Tests for target and action attenuation."""

    def test_target_equal(self):
        assert is_target_within("https://a.example/p", "https://a.example/p")

    def test_target_path_extension(self):
        assert is_target_within("https://a.example/p/zcaps", "https://a.example/p")

    def test_target_query_extension(self):
        assert is_target_within("https://a.example/p?x=1", "https://a.example/p")

    def test_target_prefix_without_separator_rejected(self):
        assert not is_target_within("https://a.example/pq", "https://a.example/p")

    def test_target_outside_rejected(self):
        assert not is_target_within("https://a.example/other", "https://a.example/p")

    def test_allowed_actions_normalized(self):
        assert get_allowed_actions({"allowedAction": "read"}) == ["read"]
        assert get_allowed_actions({}) is None

    def test_unrestricted_capability_allows_any_action(self):
        assert is_action_allowed({}, "write")
        assert not is_action_allowed({"allowedAction": ["read"]}, "write")

    def test_action_subset(self):
        parent = {"allowedAction": ["read", "write"]}
        assert is_action_subset({"allowedAction": "read"}, parent)
        assert not is_action_subset({"allowedAction": ["read", "delete"]}, parent)
        assert not is_action_subset({}, parent)
        assert is_action_subset({}, {})

    def test_controllers_normalized(self):
        assert get_controllers({"controller": "a"}) == ["a"]
        assert get_controllers({"controller": ["a", "b"]}) == ["a", "b"]


class TestChains:
    """Tests for capability chain computation."""

    def test_chain_from_root(self):
        root = create_root_capability(controller="did:key:z1", invocation_target="https://a.example")
        assert compute_capability_chain(root) == [root["id"]]

    def test_chain_from_delegated_parent_embeds_parent(self):
        parent = {
            "id": "urn:uuid:1",
            "parentCapability": "urn:zcap:root:x",
            "proof": {"capabilityChain": ["urn:zcap:root:x"]},
        }
        assert compute_capability_chain(parent) == ["urn:zcap:root:x", parent]

    def test_chain_ids_replace_embedded_grandparent(self):
        grandparent = {"id": "urn:uuid:1"}
        parent = {"id": "urn:uuid:2", "proof": {"capabilityChain": ["urn:zcap:root:x", grandparent]}}
        assert compute_capability_chain(parent) == ["urn:zcap:root:x", "urn:uuid:1", parent]

    def test_strip_proof(self):
        assert strip_proof({"id": "a", "proof": {}}) == {"id": "a"}

    def test_canonicalize_is_key_order_independent(self):
        assert canonicalize({"b": 1, "a": [1, {"d": 2, "c": 3}]}) == canonicalize(
            {"a": [1, {"c": 3, "d": 2}], "b": 1}
        )
