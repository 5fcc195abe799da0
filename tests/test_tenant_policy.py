"""Tests for tenant source policies."""

import json
from types import SimpleNamespace

import pytest

from server.tenant_policy import (
    POLICIES_ENV_VAR,
    TenantPolicy,
    TenantPolicyRegistry,
    apply_source_policy,
    can_sync_source,
    filter_candidates_by_policy,
    get_tenant_policy,
    parse_tenant_policies,
)


class TestParse:
    """Test parse_tenant_policies."""

    def test_valid_map(self):
        raw = json.dumps({
            "acme": {"allow_sources": ["stripe", 3], "deny_sources": ["plaid"], "min_trust_score": 1.7},
            "default": {"sync_allowed_sources": ["stripe"]},
        })

        policies = parse_tenant_policies(raw)

        assert policies["acme"].allow_sources == ["stripe"]
        assert policies["acme"].deny_sources == ["plaid"]
        assert policies["acme"].min_trust_score == 1.0
        assert policies["default"].sync_allowed_sources == ["stripe"]

    @pytest.mark.parametrize("raw", ["", "   ", "{not json", "[1, 2]", '"text"'])
    def test_malformed_is_empty(self, raw):
        assert parse_tenant_policies(raw) == {}

    def test_non_object_entries_skipped(self):
        assert set(parse_tenant_policies('{"a": [], "b": {}}')) == {"b"}

    @pytest.mark.parametrize("trust, expected", [(True, None), ("0.5", None), (-1, 0.0), (0.4, 0.4)])
    def test_trust_score_validation(self, trust, expected):
        policies = parse_tenant_policies(json.dumps({"t": {"min_trust_score": trust}}))
        assert policies["t"].min_trust_score == expected


class TestRegistry:
    """Test the environment-backed registry."""

    def test_tenant_then_default_then_empty(self, monkeypatch):
        monkeypatch.setenv(POLICIES_ENV_VAR, json.dumps({
            "acme": {"allow_sources": ["stripe"]},
            "default": {"deny_sources": ["plaid"]},
        }))
        registry = TenantPolicyRegistry()

        assert registry.get("acme").allow_sources == ["stripe"]
        assert registry.get("other").deny_sources == ["plaid"]

        monkeypatch.setenv(POLICIES_ENV_VAR, "{}")
        assert registry.get("acme") == TenantPolicy()

    def test_unset_env(self, monkeypatch):
        monkeypatch.delenv(POLICIES_ENV_VAR, raising=False)
        assert TenantPolicyRegistry().get("anyone") == TenantPolicy()


class TestApplySourcePolicy:
    """Test apply_source_policy."""

    def test_unrestricted(self):
        assert apply_source_policy(None, TenantPolicy()) is None
        assert apply_source_policy([], TenantPolicy(deny_sources=["plaid"])) is None

    def test_allow_list_used_when_nothing_requested(self):
        assert apply_source_policy(None, TenantPolicy(allow_sources=["stripe", "openai"])) == ["stripe", "openai"]

    def test_requested_narrowed_by_allow_and_deny(self):
        policy = TenantPolicy(allow_sources=["stripe", "plaid"], deny_sources=["plaid"])
        assert apply_source_policy(["plaid", "stripe", "openai", "stripe"], policy) == ["stripe"]

    def test_everything_denied_is_empty(self):
        assert apply_source_policy(["plaid"], TenantPolicy(deny_sources=["plaid"])) == []


class TestFilterCandidatesByPolicy:
    """Test filter_candidates_by_policy."""

    def hits(self):
        return [
            SimpleNamespace(source="stripe", trust_score=0.9),
            SimpleNamespace(source="plaid", trust_score=0.9),
            SimpleNamespace(source="openai", trust_score=0.4),
            SimpleNamespace(source="react", trust_score=None),
        ]

    def test_unrestricted_keeps_everything(self):
        assert len(filter_candidates_by_policy(self.hits(), TenantPolicy())) == 4

    def test_deny_and_trust_floor(self):
        kept = filter_candidates_by_policy(self.hits(), TenantPolicy(deny_sources=["plaid"], min_trust_score=0.5))
        assert [hit.source for hit in kept] == ["stripe"]

    def test_everything_removed(self):
        assert filter_candidates_by_policy(self.hits(), TenantPolicy(min_trust_score=0.95)) == []


class TestCanSyncSource:
    """Test can_sync_source."""

    def test_sync_allow_list_wins(self):
        policy = TenantPolicy(sync_allowed_sources=["plaid"], deny_sources=["plaid"])
        assert can_sync_source("plaid", policy)
        assert not can_sync_source("stripe", policy)

    def test_falls_back_to_read_lists(self):
        assert not can_sync_source("plaid", TenantPolicy(deny_sources=["plaid"]))
        assert not can_sync_source("openai", TenantPolicy(allow_sources=["stripe"]))
        assert can_sync_source("stripe", TenantPolicy(allow_sources=["stripe"]))
        assert can_sync_source("anything", TenantPolicy())


def test_module_level_lookup_reads_environment(monkeypatch):
    monkeypatch.setenv(POLICIES_ENV_VAR, json.dumps({"acme": {"min_trust_score": 0.6}}))
    assert get_tenant_policy("acme").min_trust_score == 0.6
    assert get_tenant_policy("other") == TenantPolicy()
