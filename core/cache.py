"""
Decision Cache
==============

Memoizes decisions for identical, still-valid inputs.

- Key: SHA-256 over a canonical JSON rendering of the normalized request
  plus the catalog version. Purely informational fields (request id, free
  text justification) and the caller's advisory permission list are left
  out.
- TTL: chosen per entry by the engine, never longer than the configured
  ceiling nor past the nearest time boundary the decision depended on (MFA
  window, grant expiry).
- Concurrency: entries are spread over independent shards, each an LRU
  ``OrderedDict`` behind its own lock, so concurrent evaluations only
  contend when they hash to the same shard.
"""

import dataclasses
import enum
import hashlib
import json
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from models.policy import Decision, EvaluationRequest, Regions
from .errors import CacheError

logger = logging.getLogger(__name__)

# Context fields that never influence a decision
INFORMATIONAL_CONTEXT_FIELDS = frozenset({"request_id", "justification"})
# User fields that are never authoritative
ADVISORY_USER_FIELDS = frozenset({"claimed_permissions"})


def _canonical(value: Any) -> Any:
    if isinstance(value, Regions):
        if value.is_global:
            return {"global": True}
        return {"global": False, "ids": value.as_list()}
    if dataclasses.is_dataclass(value):
        return {
            f.name: _canonical(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(_canonical(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def cache_key(request: EvaluationRequest, catalog_version: str) -> str:
    """
    Stable hash over the decision-relevant parts of a request.

    Args:
        request: Normalized request
        catalog_version: Version of the catalog snapshot used

    Returns:
        Hex digest
    """
    payload = _canonical(request)
    for name in ADVISORY_USER_FIELDS:
        payload["user"].pop(name, None)
    for name in INFORMATIONAL_CONTEXT_FIELDS:
        payload["context"].pop(name, None)
    payload["catalogVersion"] = catalog_version

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: "OrderedDict[str, Tuple[datetime, Decision]]" = OrderedDict()


class DecisionCache:
    """
    Sharded, TTL-bounded LRU cache of decisions.

    Args:
        ttl_seconds: Ceiling on any entry's lifetime
        shards: Number of independently locked shards
        max_entries_per_shard: LRU bound per shard
    """

    def __init__(self, ttl_seconds: int = 60, shards: int = 16, max_entries_per_shard: int = 1024):
        if shards < 1 or max_entries_per_shard < 1:
            raise ValueError("Cache needs at least one shard and one entry per shard")
        self.ttl_seconds = ttl_seconds
        self.max_entries_per_shard = max_entries_per_shard
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _shard(self, key: str) -> _Shard:
        return self._shards[int(key[:8], 16) % len(self._shards)]

    def get(self, key: str, now: datetime) -> Optional[Decision]:
        """
        Return a live entry or None. Expired entries are dropped on read.

        Raises:
            CacheError: On any internal failure
        """
        try:
            shard = self._shard(key)
            with shard.lock:
                entry = shard.entries.get(key)
                if entry is not None:
                    expires_at, decision = entry
                    if now < expires_at:
                        shard.entries.move_to_end(key)
                    else:
                        del shard.entries[key]
                        decision = None
                else:
                    decision = None
        except Exception as exc:
            raise CacheError("Decision cache lookup failed") from exc

        with self._stats_lock:
            if decision is None:
                self._misses += 1
            else:
                self._hits += 1
        return decision

    def put(self, key: str, decision: Decision, now: datetime, ttl_seconds: Optional[float] = None) -> bool:
        """
        Store a decision.

        Args:
            key: Cache key
            decision: Decision to store
            now: Current time
            ttl_seconds: Entry lifetime, capped at the cache ceiling

        Returns:
            False if the effective TTL was not positive and nothing was stored

        Raises:
            CacheError: On any internal failure
        """
        ttl = self.ttl_seconds if ttl_seconds is None else min(ttl_seconds, self.ttl_seconds)
        if ttl <= 0:
            return False
        try:
            shard = self._shard(key)
            with shard.lock:
                shard.entries[key] = (now + timedelta(seconds=ttl), decision)
                shard.entries.move_to_end(key)
                while len(shard.entries) > self.max_entries_per_shard:
                    shard.entries.popitem(last=False)
        except Exception as exc:
            raise CacheError("Decision cache store failed") from exc
        return True

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one entry, or everything when ``key`` is None."""
        if key is not None:
            shard = self._shard(key)
            with shard.lock:
                shard.entries.pop(key, None)
            return
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()
        logger.info("Decision cache cleared")

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        lookups = hits + misses
        return {
            'entries': len(self),
            'hits': hits,
            'misses': misses,
            'hit_rate': hits / lookups if lookups > 0 else 0,
        }
