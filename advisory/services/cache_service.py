"""
Project Cache Service.

Read-through cache in front of the project store:
  - project:{id}                 single project with its modules (300 s)
  - projects:client:{client_id}  client's project list (180 s)

Uses Redis in production (via REDIS_URL), falls back to a simple
in-memory dict for development/testing. The cache is never authoritative:
every backend error is logged and degraded to a miss or a no-op.
"""

import json
import logging
import os
import time

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def get(self, key):
        entry = _memory_store.get(key)
        if entry is None:
            return None
        val, expires = entry
        if expires and time.time() > expires:
            _memory_store.pop(key, None)
            return None
        return val

    def setex(self, key, ttl_seconds, value):
        _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for k in keys:
            _memory_store.pop(k, None)

    def flushdb(self):
        _memory_store.clear()

    def ping(self):
        return True

    def close(self):
        return None


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _get_backend(redis_url=None):
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = redis_url or os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            _backend = _redis.from_url(redis_url, decode_responses=True, socket_timeout=2)
            _backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except Exception as exc:
            logger.warning("Redis unavailable (%s) — falling back to memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


def reset_backend():
    """Forget the selected backend (next call re-resolves it)."""
    global _backend
    _backend = None


# ── Default TTLs ─────────────────────────────────────────────────────────

PROJECT_TTL = 300           # 5 minutes
CLIENT_PROJECTS_TTL = 180   # 3 minutes


# ── Key builders ─────────────────────────────────────────────────────────

def project_key(project_id):
    return f"project:{project_id}"


def client_projects_key(client_id):
    return f"projects:client:{client_id}"


# ── Public API ───────────────────────────────────────────────────────────


class ProjectCache:
    """
    JSON cache wrapper used by ProjectStore.

    Any exception from the backend is swallowed here (logged at WARNING):
    ``get_json`` returns None, writes and deletes become no-ops.
    """

    def __init__(self, backend=None, redis_url=None):
        self._backend = backend
        self._redis_url = redis_url

    @property
    def backend(self):
        if self._backend is None:
            self._backend = _get_backend(self._redis_url)
        return self._backend

    def get_json(self, key):
        """Return the decoded value, or None on miss / error."""
        try:
            raw = self.backend.get(key)
        except Exception as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set_json(self, key, value, ttl):
        try:
            self.backend.setex(key, int(ttl), json.dumps(value, default=str))
        except Exception as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    def delete(self, *keys):
        keys = [k for k in keys if k]
        if not keys:
            return
        try:
            self.backend.delete(*keys)
        except Exception as exc:
            logger.warning("Cache invalidation failed for %s: %s", ", ".join(keys), exc)

    def clear(self):
        """Flush entire cache (use sparingly — mainly for testing)."""
        try:
            self.backend.flushdb()
        except Exception as exc:
            logger.warning("Cache flush failed: %s", exc)

    def close(self):
        backend = self._backend
        if backend is None:
            return
        try:
            backend.close()
        except Exception as exc:
            logger.warning("Cache close failed: %s", exc)

    def health_check(self):
        """Return cache backend status."""
        try:
            be = self.backend
            be.ping()
            backend_type = "memory" if isinstance(be, _MemoryBackend) else "redis"
            return {"status": "ok", "backend": backend_type}
        except Exception as exc:
            return {"status": "error", "detail": str(exc)}
