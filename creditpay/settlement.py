"""
Payment settlement: quote, poll, claim.

    pending --(adapter reports is_confirmed)--> confirmed --(claim)--> claimed

A payment is never claimed straight from pending, and claimed is terminal.
Transitions for one payment token are serialized in-process with an
asyncio.Lock and across processes by conditional updates in the database.
"""

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from .adapters import PaymentStatus, Quote
from .derivation import KeyDerivationEngine
from .errors import AlreadyClaimedError, AuthorizationError, PaymentNotConfirmedError, ProviderUnavailableError
from .ledger import PURCHASE, Account, AccountStore, CreditLedger
from .pricing import CREDIT_TIERS, tier_price, valid_tiers
from .registry import AdapterRegistry
from .store import PENDING, PaymentRequest, PaymentRequestStore, mint_payment_token, token_prefix

logger = structlog.get_logger()

AWAITING_PAYMENT = "awaiting_payment"
AWAITING_CONFIRMATIONS = "awaiting_confirmations"


@dataclass
class PaymentInitiation:
    request: PaymentRequest
    quote: Quote


@dataclass
class StatusReport:
    """What a caller polling a payment token gets back."""

    payment_token: str
    chain: str
    status: str
    credits: int
    deposit_address: str
    token_symbol: str
    required_amount: int
    total_received: Optional[int] = None
    confirmed_received: Optional[int] = None
    confirmations: int = 0
    required_confirmations: Optional[int] = None
    percent_paid: Optional[Decimal] = None
    verification_unavailable: bool = False
    last_checked_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    message: str = ""


@dataclass
class ClaimResult:
    payment_token: str
    account_id: str
    chain: str
    credits: int
    balance: Decimal
    credential: Optional[str] = None

    @property
    def new_account(self) -> bool:
        return self.credential is not None


def _progress_label(status: PaymentStatus) -> str:
    if status.is_confirmed:
        return "confirmed"
    return AWAITING_CONFIRMATIONS if status.is_paid else AWAITING_PAYMENT


class SettlementService:
    """Drives payment requests from quote to credited account."""

    def __init__(
        self,
        store: PaymentRequestStore,
        ledger: CreditLedger,
        accounts: AccountStore,
        engine: KeyDerivationEngine,
        adapters: AdapterRegistry,
    ):
        self.store = store
        self.ledger = ledger
        self.accounts = accounts
        self.engine = engine
        self.adapters = adapters
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, payment_token: str) -> asyncio.Lock:
        lock = self._locks.get(payment_token)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[payment_token] = lock
        return lock

    def pricing(self, chain: Optional[str] = None) -> list[dict[str, Any]]:
        """Tier table for one chain or every enabled chain."""
        adapters = [self.adapters.get(chain)] if chain else list(self.adapters)
        tiers = [{"credits": credits, "usd": CREDIT_TIERS[credits]} for credits in valid_tiers()]
        return [
            {
                "chain": adapter.chain,
                "token_symbol": adapter.token_symbol,
                "required_confirmations": adapter.required_confirmations,
                "est_confirmation_time": adapter.est_confirmation_time,
                "est_fee": adapter.est_fee,
                "contracts": adapter.contracts(),
                "tiers": tiers,
            }
            for adapter in adapters
        ]

    async def initiate(
        self,
        credits: int,
        chain: str,
        credential: Optional[str] = None,
    ) -> PaymentInitiation:
        adapter = self.adapters.get(chain)
        tier_price(credits)

        account: Optional[Account] = None
        if credential:
            account = self.accounts.find_by_credential(credential)
            if account is None:
                # Unknown credential: treated as an anonymous purchase
                logger.info("payment_credential_ignored", chain=chain)

        payment_token = mint_payment_token()
        address = self.engine.address_for_payment(payment_token, chain)
        quote = await adapter.quote(credits, payment_token, address)

        request = self.store.create(
            payment_token=payment_token,
            chain=chain,
            deposit_address=address,
            credits_requested=credits,
            usd_amount=quote.usd_amount,
            required_amount=quote.smallest_unit_amount,
            token_symbol=quote.token_symbol,
            account_id=account.id if account else None,
        )
        return PaymentInitiation(request=request, quote=quote)

    def _report(self, request: PaymentRequest, status: str, message: str, **fields: Any) -> StatusReport:
        fields.setdefault("confirmations", request.confirmations_seen)
        return StatusReport(
            payment_token=request.payment_token,
            chain=request.chain,
            status=status,
            credits=request.credits_requested,
            deposit_address=request.deposit_address,
            token_symbol=request.token_symbol,
            required_amount=request.required_amount,
            last_checked_at=request.last_checked_at,
            claimed_at=request.claimed_at,
            message=message,
            **fields,
        )

    async def poll_status(self, payment_token: str, refresh: bool = False) -> StatusReport:
        request = self.store.get_by_token(payment_token)
        if request.is_claimed:
            return self._report(request, "claimed", "Payment confirmed and credits already claimed")
        if request.is_confirmed and not refresh:
            return self._report(request, "confirmed", "Payment confirmed, credits ready to claim")

        adapter = self.adapters.get(request.chain)
        async with self._lock_for(payment_token):
            try:
                status = await adapter.check_status(request.deposit_address, request.required_amount)
            except ProviderUnavailableError as e:
                logger.warning(
                    "payment_status_unavailable",
                    token_prefix=token_prefix(payment_token),
                    chain=request.chain,
                    provider=e.provider,
                )
                request = self.store.get_by_token(payment_token)
                return self._report(
                    request,
                    request.display_status,
                    "Unable to check blockchain. Please try again.",
                    verification_unavailable=True,
                )

            if status.is_confirmed and request.status == PENDING:
                self.store.mark_confirmed(payment_token, status.confirmations)
            else:
                self.store.record_check(payment_token, status.confirmations)
            request = self.store.get_by_token(payment_token)

        if request.is_claimed:
            label = "claimed"
        elif request.is_confirmed:
            label = "confirmed"
        else:
            label = _progress_label(status)

        messages = {
            "claimed": "Payment confirmed and credits already claimed",
            "confirmed": "Payment confirmed, credits ready to claim",
            AWAITING_CONFIRMATIONS: "Payment received, waiting for confirmations",
            AWAITING_PAYMENT: "Waiting for payment",
        }
        return self._report(
            request,
            label,
            messages[label],
            total_received=status.total_received,
            confirmed_received=status.confirmed_received,
            confirmations=status.confirmations,
            required_confirmations=status.required_confirmations,
            percent_paid=status.percent_paid,
        )

    async def claim(
        self,
        payment_token: str,
        credential: Optional[str] = None,
        label: Optional[str] = None,
    ) -> ClaimResult:
        """
        Grant the purchased credits exactly once.

        With a credential the credits go to that account; without one a new
        agent account is created and its credential returned.
        """
        async with self._lock_for(payment_token):
            request = self.store.get_by_token(payment_token)
            if request.is_claimed:
                raise AlreadyClaimedError(payment_token, request.claimed_at.isoformat())

            if not request.is_confirmed:
                adapter = self.adapters.get(request.chain)
                status = await adapter.check_status(request.deposit_address, request.required_amount)
                if not status.is_confirmed:
                    self.store.record_check(payment_token, status.confirmations)
                    raise PaymentNotConfirmedError(request.chain, _progress_label(status), status.confirmations)
                self.store.mark_confirmed(payment_token, status.confirmations)

            account: Optional[Account] = None
            if credential:
                account = self.accounts.find_by_credential(credential)
                if account is None:
                    raise AuthorizationError("Invalid API key")

            new_credential: Optional[str] = None
            with self.store.db.begin() as conn:
                if account is None and request.account_id:
                    # Bound at initiation; the credits can only go to the payer
                    account = self.accounts.get_account(request.account_id, conn=conn)
                if account is None:
                    account, new_credential = self.accounts.create_account(label=label, conn=conn)
                if not self.store.stamp_claimed(conn, payment_token, account.id):
                    raise AlreadyClaimedError(payment_token)
                entry = self.ledger.credit(
                    account.id,
                    request.credits_requested,
                    PURCHASE,
                    description=f"Purchased {request.credits_requested} credits via {request.chain}",
                    related_payment_id=request.id,
                    conn=conn,
                )

        logger.info(
            "payment_claimed",
            token_prefix=token_prefix(payment_token),
            account_id=account.id,
            credits=request.credits_requested,
            chain=request.chain,
            new_account=new_credential is not None,
        )
        return ClaimResult(
            payment_token=payment_token,
            account_id=account.id,
            chain=request.chain,
            credits=request.credits_requested,
            balance=entry.balance_after,
            credential=new_credential,
        )
