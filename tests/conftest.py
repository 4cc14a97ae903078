"""
Shared fixtures: in-memory database, ledgers, derivation engine and a
scriptable chain adapter.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

import pytest

from creditpay.adapters import ChainAdapter, ObservedFunds
from creditpay.cache import MemoryAddressCache
from creditpay.db import Database
from creditpay.derivation import KeyDerivationEngine
from creditpay.escrow import EscrowLedger
from creditpay.ledger import AccountStore, CreditLedger
from creditpay.pricing import token_units_to_decimal, usd_to_token_units
from creditpay.registry import AdapterRegistry
from creditpay.settlement import SettlementService
from creditpay.store import PaymentRequestStore
from creditpay.usage import UsageMeter

TEST_MASTER_SECRET = "unit-test-master-secret-0123456789"

# BIP32 test vector 1, chain m/0H
TEST_XPUB = (
    "xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw"
)


class FakeAdapter(ChainAdapter):
    """USDC-like adapter whose observations are set by the test."""

    token_symbol = "USDC"
    decimals = 6
    est_confirmation_time = "2-3 minutes"
    est_fee = "~$0.01"

    def __init__(self, chain: str = "polygon", required_confirmations: int = 128):
        super().__init__(required_confirmations)
        self.chain = chain
        self.funds = ObservedFunds(total_received=0, confirmed_received=0, confirmations=0)
        self.error: Optional[Exception] = None
        self.calls = 0

    def set_funds(self, total: int, confirmed: int, confirmations: int) -> None:
        self.funds = ObservedFunds(
            total_received=total,
            confirmed_received=confirmed,
            confirmations=confirmations,
        )

    async def convert_usd(self, usd: Decimal) -> tuple[Decimal, int, Optional[Decimal]]:
        units = usd_to_token_units(usd)
        return token_units_to_decimal(units), units, Decimal("1")

    async def observe(self, address: str) -> ObservedFunds:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.funds

    def explorer_url(self, address: str) -> str:
        return f"https://explorer.test/address/{address}"


@pytest.fixture
def db():
    database = Database("sqlite://")
    yield database
    database.close()


@pytest.fixture
def file_db(tmp_path):
    """File-backed database, for tests that use several threads."""
    database = Database(f"sqlite:///{tmp_path / 'creditpay.db'}")
    yield database
    database.close()


@pytest.fixture
def accounts(db):
    return AccountStore(db)


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def escrow(db, ledger):
    return EscrowLedger(db, ledger)


@pytest.fixture
def usage(accounts, ledger):
    return UsageMeter(accounts, ledger)


@pytest.fixture
def engine():
    return KeyDerivationEngine(
        master_secret=TEST_MASTER_SECRET,
        bitcoin_xpub=TEST_XPUB,
        cache=MemoryAddressCache(),
    )


@pytest.fixture
def polygon_adapter():
    return FakeAdapter("polygon", required_confirmations=128)


@pytest.fixture
def settlement(db, accounts, ledger, engine, polygon_adapter):
    registry = AdapterRegistry({"polygon": polygon_adapter})
    return SettlementService(PaymentRequestStore(db), ledger, accounts, engine, registry)


@pytest.fixture
def funded_account(accounts, ledger):
    """Factory: account holding `credits` credits. Returns (account, credential)."""

    def _make(credits, label: str = "test-agent"):
        account, credential = accounts.create_account(label=label)
        if credits:
            ledger.credit(account.id, credits, "adjustment", description="test funding")
        return account, credential

    return _make
