"""
Core cache data structures.
"""
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")


class CacheableDataType(str, Enum):
    """Data types stored in the durable cache, one row per shop each."""
    VENDORS = "vendors"
    PRODUCT_TYPES = "productTypes"
    STORE_SETTINGS = "storeSettings"
    SCOPE_CHECK = "scopeCheck"


class CacheCorruptionError(ValueError):
    """Stored payload could not be decoded into a cache envelope."""
    pass


def now_ms(clock=time.time) -> int:
    """Epoch milliseconds from a seconds clock."""
    return int(clock() * 1000)


@dataclass
class CacheEnvelope:
    """
    Wire format of a durable cache entry: {"data", "timestamp", "expiresAt"}.

    Timestamps are epoch milliseconds.
    """
    data: Any
    timestamp: int
    expires_at: int

    @property
    def ttl_ms(self) -> int:
        return self.expires_at - self.timestamp

    def to_json(self) -> str:
        return json.dumps({
            "data": self.data,
            "timestamp": self.timestamp,
            "expiresAt": self.expires_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "CacheEnvelope":
        """
        Decode a stored envelope.

        Raises:
            CacheCorruptionError: if the text is not JSON or lacks required fields
        """
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheCorruptionError(f"Invalid JSON: {e}") from e

        if not isinstance(parsed, dict) or "data" not in parsed:
            raise CacheCorruptionError("Envelope is missing 'data'")

        timestamp = parsed.get("timestamp")
        expires_at = parsed.get("expiresAt")
        if not isinstance(timestamp, (int, float)) or not isinstance(expires_at, (int, float)):
            raise CacheCorruptionError("Envelope has invalid timestamps")

        return cls(data=parsed["data"], timestamp=int(timestamp), expires_at=int(expires_at))


@dataclass
class CacheMetadata:
    """
    Metadata about a cache read, included in API responses.
    """
    is_stale: bool
    is_expired: bool
    age: int            # ms since write
    remaining_ttl: int  # ms until expiry, never negative
    hit_rate: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "isStale": self.is_stale,
            "isExpired": self.is_expired,
            "age": self.age,
            "remainingTTL": self.remaining_ttl,
        }
        if self.hit_rate is not None:
            result["hitRate"] = round(self.hit_rate, 1)
        return result


@dataclass
class CacheResult(Generic[T]):
    """Result of a durable cache read. `data` is None when absent or expired."""
    data: Optional[T] = None
    metadata: Optional[CacheMetadata] = None

    @property
    def hit(self) -> bool:
        return self.data is not None


@dataclass
class Page:
    """One page of a cursor-paginated upstream listing."""
    items: List[Any] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None
