"""
Wiring of the service graph from Settings.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .cache import AddressCache, DatabaseAddressCache, MemoryAddressCache
from .config import Settings
from .db import Database
from .derivation import ChainFamily, KeyDerivationEngine, family_for_chain
from .errors import ConfigurationError
from .escrow import EscrowLedger
from .ledger import AccountStore, CreditLedger
from .registry import AdapterRegistry, build_adapters
from .settlement import SettlementService
from .store import PaymentRequestStore
from .usage import UsageMeter

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    db: Database
    engine: KeyDerivationEngine
    adapters: AdapterRegistry
    accounts: AccountStore
    ledger: CreditLedger
    store: PaymentRequestStore
    settlement: SettlementService
    escrow: EscrowLedger
    usage: UsageMeter

    async def close(self) -> None:
        await self.adapters.close()
        self.db.close()


def build_engine(settings: Settings, db: Optional[Database] = None) -> KeyDerivationEngine:
    cache: AddressCache
    if settings.address_cache == "memory":
        cache = MemoryAddressCache()
    elif settings.address_cache == "database":
        if db is None:
            raise ConfigurationError("ADDRESS_CACHE=database needs a database")
        cache = DatabaseAddressCache(db)
    else:
        raise ConfigurationError(f"Unknown ADDRESS_CACHE: {settings.address_cache}")

    return KeyDerivationEngine(
        master_secret=settings.payment_master_secret,
        bitcoin_xpub=settings.bitcoin_xpub,
        cache=cache,
    )


def check_key_material(engine: KeyDerivationEngine, chains: list[str]) -> None:
    """Every enabled chain must be derivable before the service accepts payments."""
    for chain in chains:
        family = family_for_chain(chain)
        if family is ChainFamily.BITCOIN and not engine.supports_bitcoin:
            raise ConfigurationError("BITCOIN_XPUB is required when bitcoin is enabled")
        if family is not ChainFamily.BITCOIN and not engine.supports_secret_derivation:
            raise ConfigurationError(f"PAYMENT_MASTER_SECRET is required when {chain} is enabled")


def build_services(settings: Settings, adapters: Optional[AdapterRegistry] = None) -> Services:
    db = Database(settings.database_url)
    engine = build_engine(settings, db)
    if adapters is None:
        adapters = build_adapters(settings)
    check_key_material(engine, adapters.chains())

    accounts = AccountStore(db)
    ledger = CreditLedger(db)
    store = PaymentRequestStore(db)
    return Services(
        settings=settings,
        db=db,
        engine=engine,
        adapters=adapters,
        accounts=accounts,
        ledger=ledger,
        store=store,
        settlement=SettlementService(store, ledger, accounts, engine, adapters),
        escrow=EscrowLedger(db, ledger),
        usage=UsageMeter(accounts, ledger),
    )
