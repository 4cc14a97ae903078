"""
Chain adapter contract.

One ChainAdapter subclass per chain family turns a provider's native view of an
address into a PaymentStatus. The paid/confirmed policy lives here, once:

    is_paid      <=> total_received     >= 95% of required
    is_confirmed <=> confirmed_received >= 95% of required
                     and confirmations  >= required_confirmations
"""

import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

import httpx
import structlog

from .errors import ProviderUnavailableError
from .pricing import PAYMENT_TOLERANCE_PERCENT, meets_tolerance, tier_price

logger = structlog.get_logger()


@dataclass
class Quote:
    """Price quote for a credit tier on one chain."""

    chain: str
    token_symbol: str
    credits: int
    usd_amount: Decimal
    native_amount: Decimal
    smallest_unit_amount: int
    decimals: int
    deposit_address: str
    payment_token: str
    required_confirmations: int
    est_confirmation_time: str
    est_fee: str
    explorer_url: str
    contracts: list[str] = field(default_factory=list)
    native_price_usd: Optional[Decimal] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TransferRecord:
    """One incoming transfer as seen by a provider."""

    tx_hash: str
    amount: int  # smallest unit
    confirmed: bool
    confirmations: int = 0
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    contract: Optional[str] = None


@dataclass
class ObservedFunds:
    """Raw provider observation, before policy is applied."""

    total_received: int
    confirmed_received: int
    confirmations: int
    transactions: list[TransferRecord] = field(default_factory=list)


@dataclass
class PaymentStatus:
    """Normalized verification result for a deposit address."""

    chain: str
    address: str
    required_amount: int
    total_received: int
    confirmed_received: int
    confirmations: int
    required_confirmations: int
    is_paid: bool
    is_confirmed: bool
    transactions: list[TransferRecord] = field(default_factory=list)

    @property
    def pending_received(self) -> int:
        return max(0, self.total_received - self.confirmed_received)

    @property
    def percent_paid(self) -> Decimal:
        if self.required_amount <= 0:
            return Decimal("0.00")
        pct = Decimal(self.total_received) * 100 / Decimal(self.required_amount)
        return pct.quantize(Decimal("0.01"))


class TimedValue:
    """Single value reused for ttl seconds (block height, spot price)."""

    def __init__(self, ttl: float):
        self.ttl = ttl
        self._value: Any = None
        self._stored_at: Optional[float] = None

    def get(self) -> Any:
        if self._stored_at is None or self.ttl <= 0:
            return None
        if time.monotonic() - self._stored_at > self.ttl:
            return None
        return self._value

    def last(self) -> Any:
        """Last stored value regardless of age."""
        return self._value

    def set(self, value: Any) -> None:
        self._value = value
        self._stored_at = time.monotonic()


@asynccontextmanager
async def provider_call(provider: str) -> AsyncIterator[None]:
    """Translate transport and payload failures into ProviderUnavailableError."""
    try:
        yield
    except ProviderUnavailableError:
        raise
    except httpx.TimeoutException as e:
        logger.warning("provider_timeout", provider=provider, error=str(e))
        raise ProviderUnavailableError(provider, "timeout") from e
    except httpx.HTTPError as e:
        logger.warning("provider_http_error", provider=provider, error=str(e))
        raise ProviderUnavailableError(provider, str(e) or type(e).__name__) from e
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("provider_bad_payload", provider=provider, error=str(e))
        raise ProviderUnavailableError(provider, f"unexpected response: {e}") from e


class ChainAdapter(ABC):
    """Uniform pricing + status contract over one chain's data provider."""

    chain: str
    token_symbol: str
    decimals: int
    est_confirmation_time: str
    est_fee: str

    def __init__(self, required_confirmations: int, tolerance_percent: int = PAYMENT_TOLERANCE_PERCENT):
        if required_confirmations < 1:
            raise ValueError("required_confirmations must be >= 1")
        self.required_confirmations = required_confirmations
        self.tolerance_percent = tolerance_percent

    @abstractmethod
    async def convert_usd(self, usd: Decimal) -> tuple[Decimal, int, Optional[Decimal]]:
        """Returns (native_amount, smallest_unit_amount, native_price_usd)."""

    @abstractmethod
    async def observe(self, address: str) -> ObservedFunds:
        """Query the provider. Raises ProviderUnavailableError on any failure."""

    @abstractmethod
    def explorer_url(self, address: str) -> str: ...

    def contracts(self) -> list[str]:
        return []

    async def close(self) -> None:
        return None

    async def quote(self, credits: int, payment_token: str, deposit_address: str) -> Quote:
        usd = tier_price(credits)
        native_amount, smallest, price = await self.convert_usd(usd)
        return Quote(
            chain=self.chain,
            token_symbol=self.token_symbol,
            credits=credits,
            usd_amount=usd,
            native_amount=native_amount,
            smallest_unit_amount=smallest,
            decimals=self.decimals,
            deposit_address=deposit_address,
            payment_token=payment_token,
            required_confirmations=self.required_confirmations,
            est_confirmation_time=self.est_confirmation_time,
            est_fee=self.est_fee,
            explorer_url=self.explorer_url(deposit_address),
            contracts=self.contracts(),
            native_price_usd=price,
        )

    def evaluate(self, address: str, required_amount: int, funds: ObservedFunds) -> PaymentStatus:
        is_paid = meets_tolerance(funds.total_received, required_amount, self.tolerance_percent)
        is_confirmed = (
            meets_tolerance(funds.confirmed_received, required_amount, self.tolerance_percent)
            and funds.confirmations >= self.required_confirmations
        )
        return PaymentStatus(
            chain=self.chain,
            address=address,
            required_amount=required_amount,
            total_received=funds.total_received,
            confirmed_received=funds.confirmed_received,
            confirmations=funds.confirmations,
            required_confirmations=self.required_confirmations,
            is_paid=is_paid,
            is_confirmed=is_confirmed,
            transactions=funds.transactions,
        )

    async def check_status(self, address: str, required_amount: int) -> PaymentStatus:
        funds = await self.observe(address)
        status = self.evaluate(address, required_amount, funds)
        logger.info(
            "payment_status_checked",
            chain=self.chain,
            address=address,
            required=required_amount,
            total=status.total_received,
            confirmed=status.confirmed_received,
            confirmations=status.confirmations,
            is_paid=status.is_paid,
            is_confirmed=status.is_confirmed,
        )
        return status
