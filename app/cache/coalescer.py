"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same data, only one
upstream call is made and all requesters share the result.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger("cache.coalescer")

DEFAULT_LINGER_SECONDS = 0.1
DEFAULT_MAX_IN_FLIGHT_SECONDS = 30.0


def _escape(text: Any) -> str:
    return str(text).replace("\\", "\\\\").replace("|", "\\|").replace(":", "\\:")


@dataclass
class InFlightRequest:
    """Tracks an in-progress (or just-settled) upstream request."""
    key: str
    future: asyncio.Future
    started_at: float = field(default_factory=time.monotonic)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one upstream call.

    Pattern:
    - First request for a key starts the fetch and registers its future
    - Subsequent requests for the same key await the registered future
    - The registration lingers `ttl` seconds after the future settles, so a
      burst arriving right after completion still reuses the result
    - Entries that never settle are evicted after `max_in_flight`

    The check-then-insert in `deduplicate` has no await point, which keeps it
    atomic on a single event loop.

    Usage:
        coalescer = RequestCoalescer()
        key = RequestCoalescer.generate_key("vendors", {"shop": shop})
        result = await coalescer.deduplicate(key, lambda: fetch_vendors(shop))
    """

    def __init__(
        self,
        ttl: float = DEFAULT_LINGER_SECONDS,
        max_in_flight: float = DEFAULT_MAX_IN_FLIGHT_SECONDS,
    ):
        """
        Initialize the coalescer.

        Args:
            ttl: Default seconds a settled entry lingers before removal
            max_in_flight: Max seconds an unsettled entry is shared before
                it is evicted and the next caller starts a fresh fetch
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._ttl = ttl
        self._max_in_flight = max_in_flight

    @staticmethod
    def generate_key(endpoint: str, params: Mapping[str, Any]) -> str:
        """
        Build a deterministic key: `endpoint|name1:value1|name2:value2`.

        Parameter names are sorted; `\\`, `|` and `:` are escaped so distinct
        parameter sets never produce the same key.
        """
        parts = [f"{_escape(name)}:{_escape(params[name])}" for name in sorted(params)]
        return f"{_escape(endpoint)}|" + "|".join(parts)

    async def deduplicate(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Either join an existing request for `key` or start a new one.

        Args:
            key: Key from `generate_key`
            fetcher: Zero-argument callable returning an awaitable
            ttl: Seconds to keep the entry after it settles

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            Exception: any error from fetcher, delivered to every joined caller
        """
        linger = self._ttl if ttl is None else ttl

        existing = self._in_flight.get(key)
        if existing is not None and self._is_overdue(existing):
            self._evict_overdue(existing)
            existing = None

        if existing is not None:
            existing.waiter_count += 1
            logger.info(
                f"Request deduplication hit for key: {key} "
                f"(waiters: {existing.waiter_count})"
            )
            return await asyncio.shield(existing.future)

        logger.info(f"Request deduplication miss for key: {key}")
        future = asyncio.ensure_future(fetcher())
        entry = InFlightRequest(key=key, future=future)
        self._in_flight[key] = entry
        future.add_done_callback(lambda f: self._on_settled(entry, linger))

        return await asyncio.shield(future)

    def _on_settled(self, entry: InFlightRequest, linger: float) -> None:
        if not entry.future.cancelled() and entry.future.exception() is not None:
            logger.warning(f"Fetch failed for {entry.key}: {entry.future.exception()}")
        asyncio.get_running_loop().call_later(linger, self._remove, entry)

    def _remove(self, entry: InFlightRequest) -> None:
        # A newer registration for the same key must survive
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]
            logger.debug(f"Cleaned up in-flight entry for key: {entry.key}")

    def _is_overdue(self, entry: InFlightRequest) -> bool:
        return (
            not entry.future.done()
            and time.monotonic() - entry.started_at > self._max_in_flight
        )

    def _evict_overdue(self, entry: InFlightRequest) -> None:
        age = time.monotonic() - entry.started_at
        logger.warning(
            f"Evicting in-flight request for {entry.key} "
            f"unsettled after {age:.1f}s"
        )
        self._remove(entry)

    def sweep(self) -> int:
        """
        Evict every unsettled entry older than the in-flight bound.

        Returns:
            Number of entries evicted
        """
        overdue = [entry for entry in self._in_flight.values() if self._is_overdue(entry)]
        for entry in overdue:
            self._evict_overdue(entry)
        return len(overdue)

    def clear(self) -> None:
        """Drop every registration. Running fetches are left untouched."""
        self._in_flight.clear()
        logger.info("Request cache cleared")

    @property
    def size(self) -> int:
        """Number of registered keys (in flight or lingering)."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": sum(1 for e in self._in_flight.values() if not e.future.done()),
            "registered_keys": list(self._in_flight.keys()),
        }
