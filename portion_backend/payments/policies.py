"""
Spending policies applied to every yield-funded payment.

Three policies, persisted as one document:
- daily_limit: total spend per UTC day, in USD
- merchant_whitelist: merchants that may be paid
- max_transaction: largest single payment, in USD

evaluate() reports the first violated policy; the orchestrator turns that
into a denied audit event and a PolicyDenied error.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from portion_backend.core.exceptions import InvalidRequest, UnknownPolicy
from portion_backend.ledger.models import AuditCategory
from portion_backend.ledger.storage import MemoryStateStore, StateStore
from portion_backend.portion_logging import get_logger

logger = get_logger(__name__)

POLICIES_KEY = "portion_spending_policies_v1"


class PolicyType(str, Enum):
    DAILY_LIMIT = "daily_limit"
    MERCHANT_WHITELIST = "merchant_whitelist"
    MAX_TRANSACTION = "max_transaction"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    DISABLED = "disabled"


@dataclass(frozen=True)
class SpendingPolicy:
    id: str
    name: str
    type: PolicyType
    enabled: bool
    value: float | tuple[str, ...]
    max_value: float | None = None
    status: PolicyStatus = PolicyStatus.ACTIVE

    @property
    def limit(self) -> float:
        return float(self.value) if not isinstance(self.value, tuple) else 0.0

    @property
    def merchants(self) -> tuple[str, ...]:
        return self.value if isinstance(self.value, tuple) else ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "enabled": self.enabled,
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
            "maxValue": self.max_value,
            "status": self.status.value,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "SpendingPolicy":
        policy_type = PolicyType(data["type"])
        raw = data["value"]
        if policy_type is PolicyType.MERCHANT_WHITELIST:
            value: float | tuple[str, ...] = tuple(str(m) for m in raw)
        else:
            value = float(raw)
        max_value = data.get("maxValue")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            type=policy_type,
            enabled=bool(data["enabled"]),
            value=value,
            max_value=float(max_value) if max_value is not None else None,
            status=PolicyStatus(data.get("status", PolicyStatus.ACTIVE.value)),
        )


DEFAULT_POLICIES: tuple[SpendingPolicy, ...] = (
    SpendingPolicy(
        id="daily_limit",
        name="Daily Spending Limit",
        type=PolicyType.DAILY_LIMIT,
        enabled=True,
        value=500.0,
        max_value=1000.0,
    ),
    SpendingPolicy(
        id="merchant_whitelist",
        name="Merchant Whitelist",
        type=PolicyType.MERCHANT_WHITELIST,
        enabled=True,
        value=("OpenAI", "Anthropic", "AWS", "Portion"),
    ),
    SpendingPolicy(
        id="max_transaction",
        name="Max Transaction Size",
        type=PolicyType.MAX_TRANSACTION,
        enabled=False,
        value=100.0,
        max_value=500.0,
        status=PolicyStatus.PENDING,
    ),
)


@dataclass(frozen=True)
class PolicyViolation:
    policy_id: str
    category: AuditCategory
    reason: str


class SpendingPolicies:
    def __init__(
        self,
        store: StateStore | None = None,
        *,
        key: str = POLICIES_KEY,
        defaults: tuple[SpendingPolicy, ...] = DEFAULT_POLICIES,
    ) -> None:
        self._store = store if store is not None else MemoryStateStore()
        self._key = key
        self._policies: dict[str, SpendingPolicy] = {p.id: p for p in defaults}
        self._lock = asyncio.Lock()

    async def load(self) -> int:
        """Overlay persisted policies on the defaults. Returns number loaded from storage."""
        loaded = 0
        async with self._lock:
            raw = await asyncio.to_thread(self._store.load, self._key)
            policies = dict(self._policies)
            for record in raw if isinstance(raw, list) else []:
                try:
                    policy = SpendingPolicy.from_record(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("policy_record_skipped", key=self._key, error=str(e))
                    continue
                if policy.id in policies:
                    policies[policy.id] = policy
                    loaded += 1
            self._policies = policies
        logger.info("policies_loaded", key=self._key, count=loaded)
        return loaded

    def list_policies(self) -> list[SpendingPolicy]:
        return list(self._policies.values())

    def get(self, policy_id: str) -> SpendingPolicy:
        policy = self._policies.get(policy_id)
        if policy is None:
            raise UnknownPolicy(policy_id)
        return policy

    @property
    def daily_limit(self) -> float | None:
        policy = self._policies.get(PolicyType.DAILY_LIMIT.value)
        return policy.limit if policy is not None and policy.enabled else None

    async def update_policy(
        self,
        policy_id: str,
        *,
        enabled: bool | None = None,
        value: Any = None,
    ) -> SpendingPolicy:
        """
        Toggle a policy or change its value.

        Limits must be positive and within max_value; the whitelist takes a
        list of merchant names. Raises InvalidRequest otherwise.
        """
        async with self._lock:
            policy = self.get(policy_id)
            updated = policy
            if value is not None:
                updated = replace(updated, value=_checked_value(policy, value))
            if enabled is not None:
                updated = replace(
                    updated,
                    enabled=enabled,
                    status=PolicyStatus.ACTIVE if enabled else PolicyStatus.DISABLED,
                )
            policies = {**self._policies, policy_id: updated}
            await asyncio.to_thread(
                self._store.save, self._key, [p.to_dict() for p in policies.values()]
            )
            self._policies = policies
        logger.info("policy_updated", policy_id=policy_id, enabled=updated.enabled)
        return updated

    def evaluate(self, merchant: str, amount: float, spent_today: float) -> PolicyViolation | None:
        for policy in self._policies.values():
            if not policy.enabled:
                continue
            if policy.type is PolicyType.MERCHANT_WHITELIST:
                allowed = {m.lower() for m in policy.merchants}
                if merchant.lower() not in allowed:
                    return PolicyViolation(
                        policy.id, AuditCategory.MERCHANT, f"Merchant {merchant} is not whitelisted"
                    )
            elif policy.type is PolicyType.MAX_TRANSACTION:
                if amount > policy.limit:
                    return PolicyViolation(
                        policy.id,
                        AuditCategory.POLICY,
                        f"Amount {amount:.6f} exceeds max transaction {policy.limit:.2f}",
                    )
            elif policy.type is PolicyType.DAILY_LIMIT:
                if spent_today + amount > policy.limit:
                    return PolicyViolation(
                        policy.id,
                        AuditCategory.POLICY,
                        f"Daily limit {policy.limit:.2f} reached ({spent_today:.6f} spent today)",
                    )
        return None


def _checked_value(policy: SpendingPolicy, value: Any) -> float | tuple[str, ...]:
    if policy.type is PolicyType.MERCHANT_WHITELIST:
        if not isinstance(value, (list, tuple)) or not all(isinstance(m, str) and m.strip() for m in value):
            raise InvalidRequest("Merchant whitelist must be a list of merchant names")
        return tuple(dict.fromkeys(m.strip() for m in value))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequest(f"{policy.name} must be a number")
    limit = float(value)
    if limit <= 0:
        raise InvalidRequest(f"{policy.name} must be positive")
    if policy.max_value is not None and limit > policy.max_value:
        raise InvalidRequest(f"{policy.name} cannot exceed {policy.max_value:.2f}")
    return limit
