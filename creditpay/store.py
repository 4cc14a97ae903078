"""
Persistence of payment requests.

State changes are conditional updates so that concurrent pollers and claimers
can race safely: whoever's UPDATE matches the expected prior state wins, the
rest observe rowcount == 0.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.engine import Connection

from .db import Database, payment_requests, utcnow
from .errors import PaymentNotFoundError

logger = structlog.get_logger()

PAYMENT_TOKEN_PREFIX = "pmt_"

PENDING = "pending"
CONFIRMED = "confirmed"


def mint_payment_token() -> str:
    """pmt_ + 64 hex (256 bits)."""
    return PAYMENT_TOKEN_PREFIX + secrets.token_hex(32)


def token_prefix(payment_token: str) -> str:
    """Loggable prefix of a payment token."""
    return payment_token[:12]


@dataclass
class PaymentRequest:
    id: str
    payment_token: str
    account_id: Optional[str]
    chain: str
    deposit_address: str
    credits_requested: int
    usd_amount: Decimal
    required_amount: int
    token_symbol: str
    status: str
    confirmations_seen: int
    created_at: datetime
    last_checked_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None

    @property
    def is_confirmed(self) -> bool:
        return self.status == CONFIRMED

    @property
    def display_status(self) -> str:
        """pending | confirmed | claimed."""
        return "claimed" if self.is_claimed else self.status


def _from_row(row) -> PaymentRequest:
    return PaymentRequest(
        id=row.id,
        payment_token=row.payment_token,
        account_id=row.account_id,
        chain=row.chain,
        deposit_address=row.deposit_address,
        credits_requested=row.credits_requested,
        usd_amount=row.usd_amount,
        required_amount=row.required_amount,
        token_symbol=row.token_symbol,
        status=row.status,
        confirmations_seen=row.confirmations_seen,
        created_at=row.created_at,
        last_checked_at=row.last_checked_at,
        confirmed_at=row.confirmed_at,
        claimed_at=row.claimed_at,
    )


class PaymentRequestStore:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        payment_token: str,
        chain: str,
        deposit_address: str,
        credits_requested: int,
        usd_amount: Decimal,
        required_amount: int,
        token_symbol: str,
        account_id: Optional[str] = None,
    ) -> PaymentRequest:
        request = PaymentRequest(
            id=str(uuid.uuid4()),
            payment_token=payment_token,
            account_id=account_id,
            chain=chain,
            deposit_address=deposit_address,
            credits_requested=credits_requested,
            usd_amount=usd_amount,
            required_amount=required_amount,
            token_symbol=token_symbol,
            status=PENDING,
            confirmations_seen=0,
            created_at=utcnow(),
        )
        with self.db.begin() as conn:
            conn.execute(
                payment_requests.insert().values(
                    id=request.id,
                    payment_token=request.payment_token,
                    account_id=request.account_id,
                    chain=request.chain,
                    deposit_address=request.deposit_address,
                    credits_requested=request.credits_requested,
                    usd_amount=request.usd_amount,
                    required_amount=request.required_amount,
                    token_symbol=request.token_symbol,
                    status=request.status,
                    confirmations_seen=0,
                    created_at=request.created_at,
                )
            )

        logger.info(
            "payment_request_created",
            token_prefix=token_prefix(payment_token),
            chain=chain,
            credits=credits_requested,
            required_amount=required_amount,
        )
        return request

    def find_by_token(self, payment_token: str, conn: Optional[Connection] = None) -> Optional[PaymentRequest]:
        stmt = select(payment_requests).where(payment_requests.c.payment_token == payment_token)
        if conn is not None:
            row = conn.execute(stmt).fetchone()
        else:
            with self.db.connect() as c:
                row = c.execute(stmt).fetchone()
        return _from_row(row) if row else None

    def get_by_token(self, payment_token: str, conn: Optional[Connection] = None) -> PaymentRequest:
        request = self.find_by_token(payment_token, conn)
        if request is None:
            raise PaymentNotFoundError(payment_token)
        return request

    def record_check(self, payment_token: str, confirmations: int) -> None:
        """Remember when and how deep the last successful provider check was."""
        with self.db.begin() as conn:
            conn.execute(
                payment_requests.update()
                .where(payment_requests.c.payment_token == payment_token)
                .values(last_checked_at=utcnow(), confirmations_seen=confirmations)
            )

    def mark_confirmed(self, payment_token: str, confirmations: int) -> bool:
        """pending -> confirmed. Returns False if another writer got there first."""
        now = utcnow()
        with self.db.begin() as conn:
            result = conn.execute(
                payment_requests.update()
                .where(
                    payment_requests.c.payment_token == payment_token,
                    payment_requests.c.status == PENDING,
                )
                .values(
                    status=CONFIRMED,
                    confirmed_at=now,
                    last_checked_at=now,
                    confirmations_seen=confirmations,
                )
            )
        changed = result.rowcount == 1
        if changed:
            logger.info(
                "payment_confirmed",
                token_prefix=token_prefix(payment_token),
                confirmations=confirmations,
            )
        return changed

    def stamp_claimed(self, conn: Connection, payment_token: str, account_id: str) -> bool:
        """
        Set claimed_at inside the caller's transaction.

        Only a confirmed, unclaimed request matches; exactly one concurrent
        caller sees True.
        """
        result = conn.execute(
            payment_requests.update()
            .where(
                payment_requests.c.payment_token == payment_token,
                payment_requests.c.status == CONFIRMED,
                payment_requests.c.claimed_at.is_(None),
            )
            .values(claimed_at=utcnow(), account_id=account_id)
        )
        return result.rowcount == 1
