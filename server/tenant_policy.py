"""Per-tenant source access policies.

Policies are a JSON object keyed by tenant id, read from
``DOCWATCH_TENANT_POLICIES_JSON``. A ``default`` entry applies to tenants
without their own entry.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

logger = logging.getLogger(__name__)

POLICIES_ENV_VAR = 'DOCWATCH_TENANT_POLICIES_JSON'


class TenantPolicy(BaseModel):
    """Which sources a tenant may read from and sync."""
    allow_sources: Optional[List[str]] = None
    deny_sources: Optional[List[str]] = None
    min_trust_score: Optional[float] = None
    sync_allowed_sources: Optional[List[str]] = None


def _string_list(value) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, str)]


def parse_tenant_policies(raw: str) -> Dict[str, TenantPolicy]:
    """Parse the policy map; malformed input yields an empty map."""
    if not raw or not raw.strip():
        return {}

    try:
        parsed = json.loads(raw)
    except ValueError as e:
        logger.warning(f"Ignoring malformed tenant policies: {e}")
        return {}

    if not isinstance(parsed, dict):
        return {}

    policies: Dict[str, TenantPolicy] = {}
    for tenant_id, value in parsed.items():
        if not isinstance(value, dict):
            continue

        trust = value.get("min_trust_score")
        if isinstance(trust, bool) or not isinstance(trust, (int, float)):
            trust = None
        else:
            trust = max(0.0, min(1.0, float(trust)))

        policies[tenant_id] = TenantPolicy(
            allow_sources=_string_list(value.get("allow_sources")),
            deny_sources=_string_list(value.get("deny_sources")),
            sync_allowed_sources=_string_list(value.get("sync_allowed_sources")),
            min_trust_score=trust,
        )
    return policies


class TenantPolicyRegistry:
    """Caches the parsed policy map until the raw JSON changes."""

    def __init__(self, env_var: str = POLICIES_ENV_VAR):
        self.env_var = env_var
        self._raw: Optional[str] = None
        self._policies: Dict[str, TenantPolicy] = {}

    def policies(self) -> Dict[str, TenantPolicy]:
        raw = os.getenv(self.env_var, "")
        if raw != self._raw:
            self._raw = raw
            self._policies = parse_tenant_policies(raw)
        return self._policies

    def get(self, tenant_id: str) -> TenantPolicy:
        policies = self.policies()
        return policies.get(tenant_id) or policies.get("default") or TenantPolicy()


tenant_policies = TenantPolicyRegistry()


def get_tenant_policy(tenant_id: str) -> TenantPolicy:
    return tenant_policies.get(tenant_id)


def apply_source_policy(requested_sources: Optional[List[str]],
                        policy: TenantPolicy) -> Optional[List[str]]:
    """Narrow a requested source list by the tenant's allow and deny lists.

    Args:
        requested_sources: Sources asked for, or None for "any"
        policy: Tenant policy

    Returns:
        The permitted sources (possibly empty), or None when neither the
        request nor the allow list restricts sources
    """
    allow = list(policy.allow_sources or [])
    deny = set(policy.deny_sources or [])

    if requested_sources:
        candidates = list(requested_sources)
    elif allow:
        candidates = allow
    else:
        return None

    permitted: List[str] = []
    for source in candidates:
        if source in deny:
            continue
        if allow and source not in allow:
            continue
        if source not in permitted:
            permitted.append(source)
    return permitted


def can_sync_source(source: str, policy: TenantPolicy) -> bool:
    if policy.sync_allowed_sources:
        return source in policy.sync_allowed_sources
    if source in (policy.deny_sources or []):
        return False
    if policy.allow_sources:
        return source in policy.allow_sources
    return True


def filter_candidates_by_policy(candidates: Sequence[Any], policy: TenantPolicy) -> List[Any]:
    """Drop candidates from denied sources or below the tenant's trust floor.

    Candidates need ``source`` and ``trust_score`` attributes; a missing
    trust score never passes a configured floor.
    """
    deny = set(policy.deny_sources or [])
    floor = policy.min_trust_score

    kept = []
    for candidate in candidates:
        if candidate.source in deny:
            continue
        if floor is not None and (candidate.trust_score is None or candidate.trust_score < floor):
            continue
        kept.append(candidate)
    return kept
