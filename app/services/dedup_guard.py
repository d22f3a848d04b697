"""
Deduplication Guard: suppresses duplicate request submissions.

A fingerprint is the SHA-256 of (user id, operation name, canonical sorted-key
JSON of the payload, timestamp bucket). The first call stores the
fingerprint with a TTL; a second call with the same fingerprint before expiry
is rejected and told how long to wait. ``mark_completed`` removes the entry
early (on success AND on failure) so a legitimate retry after a real failure
is not blocked for the whole window.

Storage:
  - Redis (when REDIS_URL points at redis): ``SET key value NX EX ttl`` is the
    atomic insert-if-absent, so the guard holds across app instances.
  - Otherwise an in-process dict guarded by a lock. Fine for dev/tests and
    single-process deployments; it gives no cross-instance guarantee.

Usage:
    from app.services import dedup_guard

    result = dedup_guard.with_deduplication(
        user_id, "create_trf", payload, lambda: create_it(),
    )
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from flask import current_app, has_app_context

from app.core.exceptions import DuplicateRequest

logger = logging.getLogger(__name__)

KEY_PREFIX = "dedup:"
DEFAULT_TTL = 30            # seconds
DEFAULT_GRANULARITY = 1     # seconds per fingerprint time bucket


# ── In-memory fallback ───────────────────────────────────────────────────


class _MemoryBackend:
    """Lock-protected dict with per-key expiry (process-local)."""

    def __init__(self):
        self._store: dict[str, float] = {}  # key → expire_ts
        self._lock = threading.Lock()

    def _purge(self, now: float) -> int:
        expired = [k for k, exp in self._store.items() if exp <= now]
        for k in expired:
            del self._store[k]
        return len(expired)

    def set_if_absent(self, key: str, ttl: int) -> tuple[bool, int]:
        """Insert *key*; returns (inserted, remaining_seconds_if_present)."""
        now = time.time()
        with self._lock:
            self._purge(now)
            expires = self._store.get(key)
            if expires is not None:
                return False, max(1, math.ceil(expires - now))
            self._store[key] = now + ttl
            return True, 0

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def sweep(self) -> int:
        with self._lock:
            return self._purge(time.time())

    def count(self) -> int:
        with self._lock:
            self._purge(time.time())
            return len(self._store)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def ping(self):
        return True


class _RedisBackend:
    """Redis store; keys expire natively."""

    def __init__(self, client):
        self._client = client

    def set_if_absent(self, key: str, ttl: int) -> tuple[bool, int]:
        if self._client.set(key, "1", nx=True, ex=ttl):
            return True, 0
        remaining = self._client.ttl(key)
        return False, max(1, int(remaining) if remaining and remaining > 0 else 1)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def sweep(self) -> int:
        return 0

    def count(self) -> int:
        return sum(1 for _ in self._client.scan_iter(f"{KEY_PREFIX}*"))

    def clear(self) -> None:
        keys = list(self._client.scan_iter(f"{KEY_PREFIX}*"))
        if keys:
            self._client.delete(*keys)

    def ping(self):
        return self._client.ping()


# ── Singleton backend ────────────────────────────────────────────────────

_backend = None
_backend_lock = threading.Lock()


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    with _backend_lock:
        if _backend is not None:
            return _backend
        redis_url = _config("REDIS_URL", os.getenv("REDIS_URL"))
        if redis_url and redis_url.startswith(("redis://", "rediss://", "unix://")):
            try:
                import redis as _redis
                client = _redis.from_url(redis_url, decode_responses=True)
                client.ping()
                _backend = _RedisBackend(client)
                logger.info("Dedup guard: using Redis at %s", redis_url.split("@")[-1])
            except Exception as exc:
                logger.warning("Redis unavailable (%s), dedup guard falls back to memory", exc)
                _backend = _MemoryBackend()
        else:
            _backend = _MemoryBackend()
    return _backend


def _config(key: str, default: Any) -> Any:
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def reset() -> None:
    """Forget every fingerprint and the backend choice (tests)."""
    global _backend
    if _backend is not None:
        _backend.clear()
    _backend = None


# ── Public API ───────────────────────────────────────────────────────────


@dataclass
class DedupResult:
    is_duplicate: bool
    fingerprint: str
    remaining_seconds: int | None = None

    def to_dict(self) -> dict:
        return {
            "is_duplicate": self.is_duplicate,
            "fingerprint": self.fingerprint,
            "remaining_seconds": self.remaining_seconds,
        }


def generate_fingerprint(user_id, operation: str, payload: Any, timestamp: float | None = None) -> str:
    """Deterministic hash of (user, operation, canonical payload, time bucket)."""
    granularity = max(1, int(_config("DEDUP_FINGERPRINT_GRANULARITY", DEFAULT_GRANULARITY)))
    ts = time.time() if timestamp is None else timestamp
    canonical = {
        "userId": str(user_id),
        "operation": operation,
        "data": json.dumps(payload, sort_keys=True, default=str, separators=(",", ":")),
        "timestamp": int(ts // granularity),
    }
    raw = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def check_and_mark(fingerprint: str, ttl: int | None = None) -> DedupResult:
    """Record *fingerprint* unless it is already pending.

    Returns a DedupResult; ``remaining_seconds`` is set (rounded up) for
    duplicates.
    """
    ttl = int(ttl or _config("DEDUP_TTL_SECONDS", DEFAULT_TTL))
    inserted, remaining = _get_backend().set_if_absent(KEY_PREFIX + fingerprint, ttl)
    if inserted:
        return DedupResult(is_duplicate=False, fingerprint=fingerprint)
    logger.info("Duplicate request suppressed (%ss remaining)", remaining)
    return DedupResult(is_duplicate=True, fingerprint=fingerprint, remaining_seconds=remaining)


def mark_completed(fingerprint: str) -> None:
    _get_backend().delete(KEY_PREFIX + fingerprint)


def with_deduplication(
    user_id,
    operation: str,
    payload: Any,
    fn: Callable[[], Any],
    ttl: int | None = None,
) -> Any:
    """Run *fn* unless the same submission is already in flight.

    Raises:
        DuplicateRequest: with the remaining suppression window.
    """
    fingerprint = generate_fingerprint(user_id, operation, payload)
    result = check_and_mark(fingerprint, ttl)
    if result.is_duplicate:
        raise DuplicateRequest(operation, result.remaining_seconds or 1)
    try:
        return fn()
    finally:
        mark_completed(fingerprint)


def sweep_expired() -> int:
    """Maintenance sweep: drop expired fingerprints. Returns count removed."""
    removed = _get_backend().sweep()
    if removed:
        logger.debug("Dedup sweep removed %d expired fingerprint(s)", removed)
    return removed


def pending_count() -> int:
    return _get_backend().count()


def health_check() -> dict:
    try:
        be = _get_backend()
        be.ping()
        return {"status": "ok", "backend": "redis" if isinstance(be, _RedisBackend) else "memory"}
    except Exception as exc:
        return {"status": "error", "detail": str(exc)}
