"""Decompilation result cache keyed by bytecode fingerprint.

Entries live for ``mad.cache_ttl_seconds`` (24h by default) measured with the
cache's own clock, so an entry is never served past its TTL even when the
backend keeps it longer. Every entry carries a sha256 digest of its
representation; an entry whose digest does not match, or that cannot be
decoded at all, is treated as a miss and evicted.

Usage::

    cache = DecompilationCache(MemoryCacheBackend(), ttl_seconds=86400)
    entry = await cache.get(fingerprint(bytecode))
    if entry is None:
        entry = await cache.put(fingerprint(bytecode), result)
"""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

import redis.asyncio as aioredis

from hydra.core.config import Settings, get_settings
from hydra.core.errors import CacheCorruption
from hydra.decompiler.base import DecompileResult

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def fingerprint(bytecode: bytes) -> str:
    """Stable cache key for a module's bytecode."""
    return hashlib.sha256(bytecode).hexdigest()


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    bytecode_fingerprint: str
    decompiled_representation: str
    confidence: float
    created_at: float
    representation_digest: str
    cost_usd: float = 0.0

    @classmethod
    def create(cls, fp: str, result: DecompileResult, created_at: float) -> "CacheEntry":
        return cls(
            bytecode_fingerprint=fp,
            decompiled_representation=result.representation,
            confidence=result.confidence,
            created_at=created_at,
            representation_digest=_digest(result.representation),
            cost_usd=result.cost_usd,
        )

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at >= ttl_seconds

    def verify(self, fp: str) -> None:
        if self.bytecode_fingerprint != fp:
            raise CacheCorruption(
                f"entry stored under {fp[:12]} belongs to {self.bytecode_fingerprint[:12]}",
                fingerprint=fp,
            )
        if _digest(self.decompiled_representation) != self.representation_digest:
            raise CacheCorruption("representation digest mismatch", fingerprint=fp)
        if not 0.0 <= self.confidence <= 1.0:
            raise CacheCorruption(f"confidence {self.confidence} out of range", fingerprint=fp)

    def as_result(self) -> DecompileResult:
        """The cached result; reuse is free."""
        return DecompileResult(self.decompiled_representation, self.confidence, 0.0)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CacheEntry":
        try:
            data = json.loads(raw)
            return cls(
                bytecode_fingerprint=str(data["bytecode_fingerprint"]),
                decompiled_representation=str(data["decompiled_representation"]),
                confidence=float(data["confidence"]),
                created_at=float(data["created_at"]),
                representation_digest=str(data["representation_digest"]),
                cost_usd=float(data.get("cost_usd", 0.0)),
            )
        except (ValueError, TypeError, KeyError) as exc:
            raise CacheCorruption(f"undecodable cache entry: {exc}") from exc


# ── Backends ─────────────────────────────────────────────────────────────────


class CacheBackend(abc.ABC):
    """Raw string storage under string keys."""

    @abc.abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    async def close(self) -> None:
        return None


class MemoryCacheBackend(CacheBackend):
    """Process-local storage. Expiry is enforced by DecompilationCache."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)


class RedisCacheBackend(CacheBackend):
    """Shared storage for worker processes. Redis failures degrade to misses."""

    def __init__(self, url: str | None = None, prefix: str = "hydra:decompile", client: Any | None = None) -> None:
        self._url = url or get_settings().redis_url
        self._prefix = prefix
        self._client = client
        self._enabled = True

    async def _get_client(self) -> Any:
        if not self._enabled:
            return None
        if self._client is None:
            try:
                self._client = aioredis.from_url(
                    self._url,
                    decode_responses=True,
                    socket_connect_timeout=2,
                )
                await self._client.ping()
            except Exception as exc:
                logger.warning("Redis cache unavailable: %s; running without shared cache", exc)
                self._enabled = False
                self._client = None
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> str | None:
        client = await self._get_client()
        if not client:
            return None
        try:
            return await client.get(self._key(key))
        except Exception as exc:
            logger.debug("Cache GET error for %s: %s", key, exc)
            return None

    async def set(self, key: str, value: str, ttl: int) -> None:
        client = await self._get_client()
        if not client:
            return
        try:
            await client.set(self._key(key), value, ex=ttl)
        except Exception as exc:
            logger.debug("Cache SET error for %s: %s", key, exc)

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        if not client:
            return
        try:
            await client.delete(self._key(key))
        except Exception as exc:
            logger.debug("Cache DELETE error for %s: %s", key, exc)

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None


# ── Cache ────────────────────────────────────────────────────────────────────


class DecompilationCache:
    """TTL-enforcing, integrity-checking cache of decompiler results."""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl_seconds: float = 24 * 60 * 60,
        clock: Clock = time.time,
    ) -> None:
        self.backend = backend or MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.corruptions = 0

    async def get(self, fp: str) -> CacheEntry | None:
        raw = await self.backend.get(fp)
        if raw is None:
            self.misses += 1
            return None
        try:
            entry = CacheEntry.from_json(raw)
            entry.verify(fp)
        except CacheCorruption as exc:
            self.corruptions += 1
            self.misses += 1
            logger.warning(
                "Evicting corrupted cache entry: %s", exc.message,
                extra={"fingerprint": fp},
            )
            await self.backend.delete(fp)
            return None
        if entry.is_expired(self._clock(), self.ttl_seconds):
            self.misses += 1
            await self.backend.delete(fp)
            return None
        self.hits += 1
        return entry

    async def put(self, fp: str, result: DecompileResult) -> CacheEntry:
        entry = CacheEntry.create(fp, result, self._clock())
        await self.backend.set(fp, entry.to_json(), int(self.ttl_seconds))
        return entry

    async def invalidate(self, fp: str) -> None:
        await self.backend.delete(fp)

    @property
    def stats(self) -> dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "corruptions": self.corruptions}

    async def close(self) -> None:
        await self.backend.close()


def build_cache(settings: Settings | None = None, clock: Clock = time.time) -> DecompilationCache:
    """Cache configured from ``mad.cache_backend`` / ``mad.cache_ttl_seconds``."""
    settings = settings or get_settings()
    backend: CacheBackend
    if settings.mad.cache_backend == "redis":
        backend = RedisCacheBackend(settings.redis_url)
    else:
        backend = MemoryCacheBackend()
    return DecompilationCache(backend, settings.mad.cache_ttl_seconds, clock)
