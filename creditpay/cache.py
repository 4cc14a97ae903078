"""
Derived-address caches.

A cache only saves re-derivation work. Addresses are always recomputable from
(master secret or xpub, payment token), so a cold or cleared cache is never a
correctness problem.
"""

from collections import OrderedDict
from threading import Lock
from typing import Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import Database, derived_addresses

logger = structlog.get_logger()


class AddressCache(Protocol):
    def get(self, payment_token: str, chain: str) -> Optional[str]: ...

    def set(self, payment_token: str, chain: str, address: str) -> None: ...

    def clear(self) -> None: ...


class MemoryAddressCache:
    """Bounded in-process LRU cache."""

    def __init__(self, max_entries: int = 10_000):
        self.max_entries = max_entries
        self._entries: "OrderedDict[tuple[str, str], str]" = OrderedDict()
        self._lock = Lock()

    def get(self, payment_token: str, chain: str) -> Optional[str]:
        key = (payment_token, chain)
        with self._lock:
            address = self._entries.get(key)
            if address is not None:
                self._entries.move_to_end(key)
            return address

    def set(self, payment_token: str, chain: str, address: str) -> None:
        with self._lock:
            self._entries[(payment_token, chain)] = address
            self._entries.move_to_end((payment_token, chain))
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseAddressCache:
    """Cache persisted in the derived_addresses table, survives restarts."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, payment_token: str, chain: str) -> Optional[str]:
        with self.db.connect() as conn:
            row = conn.execute(
                select(derived_addresses.c.address).where(
                    derived_addresses.c.payment_token == payment_token,
                    derived_addresses.c.chain == chain,
                )
            ).fetchone()
        return row.address if row else None

    def set(self, payment_token: str, chain: str, address: str) -> None:
        try:
            with self.db.begin() as conn:
                conn.execute(
                    derived_addresses.insert().values(
                        payment_token=payment_token, chain=chain, address=address
                    )
                )
        except IntegrityError:
            # Another writer cached the same (deterministic) value first
            logger.debug("address_cache_duplicate", chain=chain)

    def clear(self) -> None:
        with self.db.begin() as conn:
            conn.execute(derived_addresses.delete())
