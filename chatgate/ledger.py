"""
Anonymous usage ledger for Chatgate.

Tracks how many messages an anonymous browser has sent today. The ledger is
written to two independent storage slots; if the slots disagree on read, each
copy has its daily reset applied, the larger count wins and both slots are
rewritten.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

from chatgate.config import GatewayConfig
from chatgate.fingerprint import fingerprints_match
from chatgate.schemas import UsageLedger


logger = logging.getLogger("chatgate.ledger")

PRIMARY_SLOT = 0
SECONDARY_SLOT = 1


def local_now() -> datetime:
    """Current local time, timezone-aware."""
    return datetime.now().astimezone()


def next_reset_boundary(now: datetime, hour: int = 2) -> datetime:
    """
    Return the next ``hour``:00 local boundary strictly after ``now``.

    Example:
        >>> next_reset_boundary(datetime(2024, 5, 1, 1, 30))
        datetime.datetime(2024, 5, 1, 2, 0)
        >>> next_reset_boundary(datetime(2024, 5, 1, 2, 0))
        datetime.datetime(2024, 5, 2, 2, 0)
    """
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


# =============================================================================
# TWO-SLOT STORAGE
# =============================================================================

class TwoSlotStore(Protocol):
    """Two independent key-value slots per ledger key."""

    def read(self, key: str) -> Tuple[Optional[str], Optional[str]]:
        ...

    def write(self, key: str, payload: str) -> None:
        ...


class InMemoryTwoSlotStore:
    """In-memory two-slot store (default)."""

    def __init__(self):
        self._slots: Dict[Tuple[str, int], str] = {}

    def read(self, key: str) -> Tuple[Optional[str], Optional[str]]:
        return self._slots.get((key, PRIMARY_SLOT)), self._slots.get((key, SECONDARY_SLOT))

    def write(self, key: str, payload: str) -> None:
        self._slots[(key, PRIMARY_SLOT)] = payload
        self._slots[(key, SECONDARY_SLOT)] = payload

    def write_slot(self, key: str, slot: int, payload: Optional[str]) -> None:
        """Write or clear a single slot."""
        if payload is None:
            self._slots.pop((key, slot), None)
        else:
            self._slots[(key, slot)] = payload


class SQLiteTwoSlotStore:
    """SQLite-backed two-slot store."""

    def __init__(self, db_path: str = "chatgate.db"):
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_slots (
                ledger_key TEXT NOT NULL,
                slot INTEGER NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (ledger_key, slot)
            )
            """
        )
        self._conn.commit()

    def read(self, key: str) -> Tuple[Optional[str], Optional[str]]:
        rows = self._conn.execute(
            "SELECT slot, payload FROM ledger_slots WHERE ledger_key = ?",
            (key,),
        ).fetchall()
        slots = {slot: payload for slot, payload in rows}
        return slots.get(PRIMARY_SLOT), slots.get(SECONDARY_SLOT)

    def write(self, key: str, payload: str) -> None:
        self._conn.executemany(
            """
            INSERT INTO ledger_slots (ledger_key, slot, payload) VALUES (?, ?, ?)
            ON CONFLICT(ledger_key, slot) DO UPDATE SET payload=excluded.payload
            """,
            [(key, PRIMARY_SLOT, payload), (key, SECONDARY_SLOT, payload)],
        )
        self._conn.commit()

    def write_slot(self, key: str, slot: int, payload: Optional[str]) -> None:
        if payload is None:
            self._conn.execute(
                "DELETE FROM ledger_slots WHERE ledger_key = ? AND slot = ?",
                (key, slot),
            )
        else:
            self._conn.execute(
                """
                INSERT INTO ledger_slots (ledger_key, slot, payload) VALUES (?, ?, ?)
                ON CONFLICT(ledger_key, slot) DO UPDATE SET payload=excluded.payload
                """,
                (key, slot, payload),
            )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


# =============================================================================
# LEDGER
# =============================================================================

class UsageLedgerStore:
    """
    Reads, reconciles and updates anonymous usage ledgers.

    Every read and write first applies the daily reset, so a ledger whose
    ``reset_at`` has passed is never observed with a stale count.
    """

    def __init__(
        self,
        slots: Optional[TwoSlotStore] = None,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        """
        Initialize the ledger store.

        Args:
            slots: Two-slot backend. Defaults to in-memory.
            config: Gateway configuration (daily limit, reset hour, tolerance).
            clock: Returns the current local time.
        """
        self.slots = slots or InMemoryTwoSlotStore()
        self.config = config or GatewayConfig()
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def daily_limit(self) -> int:
        return self.config.daily_limit

    def load(self, key: str, fingerprint: str) -> UsageLedger:
        """
        Load the ledger for a client, reconciling and resetting as needed.

        Args:
            key: Ledger key (one per browser).
            fingerprint: Freshly computed fingerprint of the caller.

        Returns:
            The current ledger.
        """
        with self._lock:
            return self._load_locked(key, fingerprint, self._clock())

    def record_reset(self, ledger: UsageLedger, now: datetime) -> UsageLedger:
        """Return a fresh ledger if ``reset_at`` has passed, else the same ledger."""
        if now >= ledger.reset_at:
            return self._fresh(ledger.fingerprint, now)
        return ledger

    def increment(self, key: str, fingerprint: str) -> Optional[UsageLedger]:
        """
        Count one message.

        The limit is checked before incrementing.

        Returns:
            The updated ledger, or None if the daily limit is already reached.
        """
        with self._lock:
            ledger = self._load_locked(key, fingerprint, self._clock())
            if ledger.count >= self.daily_limit:
                return None
            updated = ledger.with_count(ledger.count + 1)
            self._write(key, updated)
            return updated

    def start_session(self, key: str, fingerprint: str) -> UsageLedger:
        """Mark the start of a new browser session."""
        with self._lock:
            now = self._clock()
            ledger = self._load_locked(key, fingerprint, now)
            updated = replace(ledger, session_start=now)
            self._write(key, updated)
            return updated

    def remaining(self, key: str, fingerprint: str) -> int:
        ledger = self.load(key, fingerprint)
        return max(0, self.daily_limit - ledger.count)

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _load_locked(self, key: str, fingerprint: str, now: datetime) -> UsageLedger:
        raw_primary, raw_secondary = self.slots.read(key)
        primary = self._decode(key, raw_primary, now)
        secondary = self._decode(key, raw_secondary, now)

        if primary is None and secondary is None:
            ledger = self._fresh(fingerprint, now)
            self._write(key, ledger)
            return ledger

        # Reset each slot before comparing so an expired high count cannot
        # displace a live count for today.
        current = [self.record_reset(c, now) for c in (primary, secondary) if c is not None]
        ledger = max(current, key=lambda c: (c.count, c.reset_at))

        if primary != secondary:
            logger.warning(
                "Ledger slots disagree for %s (primary=%s, secondary=%s); keeping count %d",
                key,
                primary.count if primary else None,
                secondary.count if secondary else None,
                ledger.count,
            )
            self._write(key, ledger)
        elif ledger is not primary:
            logger.info("Daily usage reset for %s, next reset at %s", key, ledger.reset_at.isoformat())
            self._write(key, ledger)

        if not fingerprints_match(ledger.fingerprint, fingerprint, self.config.fingerprint_tolerance):
            logger.warning(
                "Fingerprint changed for %s (%s -> %s); starting a new ledger",
                key,
                ledger.fingerprint,
                fingerprint,
            )
            ledger = self._fresh(fingerprint, now)
            self._write(key, ledger)

        return ledger

    def _fresh(self, fingerprint: str, now: datetime) -> UsageLedger:
        return UsageLedger(
            count=0,
            reset_at=next_reset_boundary(now, self.config.reset_hour),
            fingerprint=fingerprint,
            session_start=now,
        )

    def _decode(self, key: str, raw: Optional[str], now: datetime) -> Optional[UsageLedger]:
        if raw is None:
            return None
        try:
            return UsageLedger.from_dict(json.loads(raw), tz=now.tzinfo)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable ledger slot for %s: %s", key, exc)
            return None

    def _write(self, key: str, ledger: UsageLedger) -> None:
        self.slots.write(key, json.dumps(ledger.to_dict()))
