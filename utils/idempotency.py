"""Bounded, time-windowed record of processed webhook deliveries.

Providers deliver at least once, so the same event arrives repeatedly and
sometimes concurrently. ``claim`` is the atomic check-and-set the engine uses:
exactly one caller per live key gets to apply side effects. Records older than the
retention window read as absent; eviction is lazy, oldest first, once the ledger
grows past its capacity.
"""
import hashlib
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

PROCESSING = "processing"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    first_seen_at: datetime
    outcome: str


def payload_fingerprint(payload: Any) -> str:
    """Stable short hash of a JSON payload (sorted keys)."""
    try:
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        encoded = repr(payload)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def make_idempotency_key(event: str, customer_email: str, transaction_id: Optional[str], payload: Any = None) -> str:
    txn = (transaction_id or "").strip() or f"fp-{payload_fingerprint(payload)}"
    return f"{event}:{(customer_email or '').strip().lower()}:{txn}"


class IdempotencyLedger:
    def __init__(
        self,
        capacity: int = 1000,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.retention = retention
        self._clock = clock
        self._records: "OrderedDict[str, IdempotencyRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _live(self, key: str, now: datetime) -> Optional[IdempotencyRecord]:
        rec = self._records.get(key)
        if rec is None:
            return None
        if now - rec.first_seen_at > self.retention:
            # stale; drop it on the way
            del self._records[key]
            return None
        return rec

    def _store(self, rec: IdempotencyRecord, now: datetime) -> None:
        self._records[rec.key] = rec
        self._records.move_to_end(rec.key)
        # stale entries sit at the front; drop those first, then enforce capacity
        while self._records:
            oldest = next(iter(self._records.values()))
            if now - oldest.first_seen_at > self.retention:
                self._records.popitem(last=False)
            else:
                break
        while len(self._records) > self.capacity:
            self._records.popitem(last=False)

    def seen(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            return self._live(key, self._clock())

    def record(self, key: str, outcome: str) -> None:
        """Store the final outcome, keeping the original first-seen time of a claim."""
        with self._lock:
            now = self._clock()
            existing = self._live(key, now)
            first_seen = existing.first_seen_at if existing else now
            self._records[key] = IdempotencyRecord(key, first_seen, outcome)
            if existing is None:
                self._store(self._records[key], now)

    def claim(self, key: str) -> tuple[bool, Optional[IdempotencyRecord]]:
        """Atomically reserve ``key``.

        Returns ``(True, None)`` for the caller that should process the delivery and
        ``(False, record)`` for every other caller while the key is live.
        """
        with self._lock:
            now = self._clock()
            existing = self._live(key, now)
            if existing is not None:
                return False, existing
            self._store(IdempotencyRecord(key, now, PROCESSING), now)
            return True, None

    def release(self, key: str) -> None:
        """Drop an in-flight claim so a retried delivery can be processed again."""
        with self._lock:
            rec = self._records.get(key)
            if rec is not None and rec.outcome == PROCESSING:
                del self._records[key]
