"""
In-memory response cache keyed on semantic input fingerprints.

Two requests that differ only in fields irrelevant to plan content (contact
details, employer phone, free-text preferences) share one fingerprint and
therefore one cached upstream response. Entries expire after a fixed window;
expired entries are evicted lazily on lookup and in bulk by sweep().
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from homeplan.models import PlanInput

logger = structlog.get_logger()

FINGERPRINT_LENGTH = 16


def fingerprint(plan_input: PlanInput, use_grounding: bool) -> str:
    """Stable 16-hex-char digest of the fields that determine plan content."""
    profile = plan_input.user_profile
    spec = plan_input.preferences.buyer_specialization
    payload = {
        "annualIncome": profile.income_debt.annual_income,
        "monthlyDebts": profile.income_debt.monthly_debts,
        "downPayment": profile.income_debt.down_payment_amount,
        "creditScore": profile.income_debt.credit_score,
        "location": f"{profile.location.preferred_city}-{profile.location.preferred_state}",
        "maxBudget": profile.location.max_budget,
        "language": plan_input.language.value,
        "useGrounding": bool(use_grounding),
        "specialization": spec.model_dump(by_alias=True),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


@dataclass
class CacheEntry:
    raw_response: str
    created_at: float
    approx_token_count: Optional[int] = None


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    size: int = 0


@dataclass
class ResponseCache:
    """Fingerprint → raw upstream response, with a fixed expiration window."""

    expiration_seconds: float = 300.0
    enabled: bool = True
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, CacheEntry] = field(default_factory=dict, repr=False)
    _stats: CacheStats = field(default_factory=CacheStats, repr=False)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.expiration_seconds

    def get(self, key: str) -> Optional[str]:
        if not self.enabled:
            self._stats.misses += 1
            return None
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        if self._expired(entry, self.clock()):
            del self._entries[key]
            self._stats.expirations += 1
            self._stats.misses += 1
            logger.debug("plan_cache_expired", fingerprint=key)
            return None
        self._stats.hits += 1
        return entry.raw_response

    def put(self, key: str, raw_response: str, approx_token_count: Optional[int] = None) -> None:
        if not self.enabled:
            return
        self._entries[key] = CacheEntry(
            raw_response=raw_response,
            created_at=self.clock(),
            approx_token_count=approx_token_count,
        )

    def sweep(self) -> int:
        """Evict every expired entry; returns how many were removed."""
        now = self.clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._stats.expirations += len(expired)
            logger.debug("plan_cache_swept", evicted=len(expired), remaining=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            expirations=self._stats.expirations,
            size=len(self._entries),
        )
