# Tests for oauth2/policy.py
# Created: 2026-10-19

import pytest

from tokensmith.oauth2.policy import (
    ResourcePolicy,
    ScopePolicy,
    parse_scope,
    resource_matches,
    valid_resource_uri,
)

API1 = "https://api1.example.com"
API2 = "https://api2.example.com/"


@pytest.fixture
def resources():
    return ResourcePolicy({API1: "API 1", API2: "API 2"})


@pytest.fixture
def scopes():
    return ScopePolicy({"read": "Read", "write": "Write"})


class TestHelpers:
    @pytest.mark.parametrize(
        "uri",
        ["https://api.example.com", "http://localhost:8080/mcp", "https://a.example.com/x?y=1"],
    )
    def test_valid_resource_uri(self, uri):
        assert valid_resource_uri(uri)

    @pytest.mark.parametrize(
        "uri", ["", "api.example.com", "ftp://api.example.com", "https://api.example.com/#frag"]
    )
    def test_invalid_resource_uri(self, uri):
        assert not valid_resource_uri(uri)

    def test_trailing_slash_tolerance(self):
        assert resource_matches("https://a.example.com", "https://a.example.com/")
        assert resource_matches("https://a.example.com/", "https://a.example.com")
        assert not resource_matches("https://a.example.com//", "https://a.example.com")

    def test_parse_scope(self):
        assert parse_scope("read  write") == ["read", "write"]
        assert parse_scope(None) == []
        assert parse_scope(["read"]) == ["read"]


class TestResourcePolicy:
    def test_empty_request_is_valid(self, resources):
        assert not resources.validate([], [API1])

    def test_subset_is_valid(self, resources):
        assert not resources.validate([API1], [API1, API2])

    def test_trailing_slash_against_allow_list_and_grant(self, resources):
        assert not resources.validate(["https://api2.example.com"], [API2])

    def test_superset_rejected(self, resources):
        errors = resources.validate([API1, API2], [API1])
        assert errors.on("resources") == ["not_subset"]
        assert errors.to_oauth_error().error == "invalid_target"

    def test_not_in_allow_list(self, resources):
        errors = resources.validate(["https://other.example.com"], [API1])
        assert errors.on("resources") == ["not_allowed"]

    def test_invalid_uri(self, resources):
        errors = resources.validate(["https://api1.example.com#x"])
        assert errors.on("resources") == ["invalid_uri"]

    def test_disabled_rejects_any_request(self):
        errors = ResourcePolicy({}).validate([API1])
        assert errors.on("resources") == ["not_allowed"]

    def test_empty_grant_rejects_non_empty_request(self, resources):
        errors = resources.validate([API1], [])
        assert errors.on("resources") == ["not_subset"]

    def test_required_at_authorize(self):
        policy = ResourcePolicy({API1: "API 1"}, required=True)
        assert policy.validate([], at_authorize=True).on("resources") == ["required"]
        assert not policy.validate([], [API1])

    def test_effective(self, resources):
        assert resources.effective([], [API1, API2]) == [API1, API2]
        assert resources.effective([API1], [API1, API2]) == [API1]


class TestScopePolicy:
    def test_valid(self, scopes):
        assert not scopes.validate(["read"], ["read", "write"])

    @pytest.mark.parametrize("token", ['re"ad', "re\\ad", "re ad"])
    def test_invalid_token(self, scopes, token):
        errors = scopes.validate([token])
        assert errors.on("scope") == ["invalid"]
        assert errors.to_oauth_error().error == "invalid_scope"

    def test_exact_match_only(self, scopes):
        assert scopes.validate(["read/"]).on("scope") == ["not_allowed"]

    def test_not_subset(self, scopes):
        assert scopes.validate(["write"], ["read"]).on("scope") == ["not_subset"]

    def test_disabled(self):
        assert ScopePolicy({}).validate(["read"]).on("scope") == ["not_allowed"]
