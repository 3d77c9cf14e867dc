"""
Geocoding collaborator used by the geocode-batch stage.

Concrete provider integrations live outside this package; anything with a
``name`` and a ``geocode(address)`` method returning a result mapping (or
raising) can be plugged in. Providers are tried in order, results are
validated and cached by normalized address. Cache entries expire after
``cache_ttl`` and the least recently used ones are evicted beyond
``max_cache_entries``.
"""
from __future__ import annotations

import logging
import re
import threading
from collections import Counter, OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from event_import.core.config import Settings, settings as default_settings
from event_import.core.exceptions import GeocodingError
from event_import.domain.geocoding.coordinates import is_valid_coordinates

logger = logging.getLogger(__name__)


class GeocodingResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    latitude: float
    longitude: float
    confidence: float = 1.0
    provider: str = "unknown"
    normalized_address: Optional[str] = None
    components: Dict[str, Any] = Field(default_factory=dict)
    from_cache: bool = False

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class GeocodingProvider(Protocol):
    name: str

    def geocode(self, address: str) -> Union[GeocodingResult, Dict[str, Any], None]:
        ...


def normalize_address(address: str) -> str:
    return re.sub(r"\s+", " ", str(address or "")).strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeocodingService:
    """Ordered provider fallback with validation, caching and call counters."""

    def __init__(
        self,
        providers: Sequence[GeocodingProvider],
        *,
        min_confidence: float = 0.5,
        cache_ttl: timedelta = timedelta(days=30),
        max_cache_entries: int = 10000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.providers = list(providers)
        self.min_confidence = min_confidence
        self.cache_ttl = cache_ttl
        self.max_cache_entries = max_cache_entries
        self.clock = clock or _utcnow
        self._cache: "OrderedDict[str, Tuple[GeocodingResult, datetime]]" = OrderedDict()
        self._lock = threading.Lock()
        self.provider_calls: Counter = Counter()
        self.cache_hits = 0

    @classmethod
    def from_settings(
        cls, providers: Sequence[GeocodingProvider], config: Optional[Settings] = None, **kwargs
    ) -> "GeocodingService":
        config = config or default_settings
        return cls(
            providers,
            min_confidence=config.geocoding_min_confidence,
            cache_ttl=timedelta(days=config.geocoding_cache_ttl_days),
            max_cache_entries=config.geocoding_cache_max_entries,
            **kwargs,
        )

    def _cached(self, key: str) -> Optional[GeocodingResult]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        result, cached_at = entry
        if self.clock() - cached_at > self.cache_ttl:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return result

    def _store(self, key: str, result: GeocodingResult) -> None:
        self._cache[key] = (result, self.clock())
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_cache_entries:
            self._cache.popitem(last=False)

    def cleanup_cache(self) -> int:
        """Drop expired entries and return how many were removed."""
        cutoff = self.clock() - self.cache_ttl
        with self._lock:
            expired = [key for key, (_, cached_at) in self._cache.items() if cached_at < cutoff]
            for key in expired:
                del self._cache[key]
        if expired:
            logger.info("Removed %d expired geocoding cache entries", len(expired))
        return len(expired)

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    def _validate(self, raw: Union[GeocodingResult, Dict[str, Any]], provider: str, address: str) -> GeocodingResult:
        result = raw if isinstance(raw, GeocodingResult) else GeocodingResult.model_validate({"provider": provider, **raw})
        if not is_valid_coordinates(result.latitude, result.longitude):
            raise GeocodingError(
                f"Invalid coordinates ({result.latitude}, {result.longitude})", address=address, provider=provider
            )
        if result.confidence < self.min_confidence:
            raise GeocodingError(
                f"Confidence {result.confidence:.2f} below threshold {self.min_confidence:.2f}",
                address=address,
                provider=provider,
            )
        return result

    def geocode(self, address: str, calls: Optional[Counter] = None) -> GeocodingResult:
        """Geocode one address. Provider attempts are also counted into ``calls`` when given."""
        key = normalize_address(address)
        if not key:
            raise GeocodingError("Empty address", address=address)

        with self._lock:
            cached = self._cached(key)
            if cached is not None:
                self.cache_hits += 1
                return cached.model_copy(update={"from_cache": True})

        if not self.providers:
            raise GeocodingError("No geocoding providers configured", address=address)

        failures: List[str] = []
        for provider in self.providers:
            name = getattr(provider, "name", type(provider).__name__)
            with self._lock:
                self.provider_calls[name] += 1
                if calls is not None:
                    calls[name] += 1
            try:
                raw = provider.geocode(address)
                if raw is None:
                    raise GeocodingError("No result", address=address, provider=name)
                result = self._validate(raw, name, address)
            except Exception as exc:
                # Providers are external; any failure moves on to the next one
                logger.debug("Provider %s failed for %r: %s", name, address, exc)
                failures.append(f"{name}: {exc}")
                continue

            with self._lock:
                self._store(key, result)
            return result

        raise GeocodingError(f"All geocoding providers failed ({'; '.join(failures)})", address=address)

    def batch_geocode(self, addresses: Sequence[str], concurrency: int = 4) -> Dict[str, Any]:
        """
        Geocode distinct addresses concurrently. Per-address failures are
        returned as ``GeocodingError`` values, never raised. The summary
        counts the provider calls made by this batch only.
        """
        unique = list(dict.fromkeys(a for a in addresses if a))
        results: Dict[str, Union[GeocodingResult, GeocodingError]] = {}
        calls: Counter = Counter()
        if unique:
            with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
                future_to_address = {executor.submit(self.geocode, address, calls): address for address in unique}
                for future in as_completed(future_to_address):
                    address = future_to_address[future]
                    try:
                        results[address] = future.result()
                    except GeocodingError as exc:
                        results[address] = exc

        successful = [r for r in results.values() if isinstance(r, GeocodingResult)]
        return {
            "results": results,
            "summary": {
                "total": len(unique),
                "successful": len(successful),
                "failed": len(results) - len(successful),
                "cached": sum(1 for r in successful if r.from_cache),
                "providerCalls": dict(calls),
            },
        }

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"providerCalls": dict(self.provider_calls), "cacheHits": self.cache_hits}
