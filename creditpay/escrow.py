"""
Escrow holds against an account's credit balance.

Credits leave the account when the hold is placed. A hold then ends exactly
once, either released (the credits stay spent) or voided (a percentage of the
held credits is refunded):

    held --release--> released
    held --void(pct)--> voided, refund = floor(credits_held * pct / 100)

1 credit = $0.10, so credits_held = ceil(amount_usd * 10).
"""

import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.engine import Connection

from .db import Database, escrow_holds, utcnow
from .errors import ForbiddenError, HoldNotFoundError, HoldStateError, ValidationError
from .ledger import ESCROW_HOLD, ESCROW_REFUND, CreditLedger
from .pricing import refund_credits, to_decimal, usd_to_credits

logger = structlog.get_logger()

HOLD_ID_PREFIX = "hold_"

HELD = "held"
RELEASED = "released"
VOIDED = "voided"


def mint_hold_id() -> str:
    return HOLD_ID_PREFIX + secrets.token_hex(16)


@dataclass
class EscrowHold:
    id: str
    account_id: str
    amount_usd: Decimal
    credits_held: int
    reference: Optional[str]
    service: Optional[str]
    status: str
    created_at: datetime
    refund_percent: Optional[int] = None
    refunded_credits: Optional[int] = None
    released_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None


def _from_row(row) -> EscrowHold:
    return EscrowHold(
        id=row.id,
        account_id=row.account_id,
        amount_usd=row.amount_usd,
        credits_held=row.credits_held,
        reference=row.reference,
        service=row.service,
        status=row.status,
        created_at=row.created_at,
        refund_percent=row.refund_percent,
        refunded_credits=row.refunded_credits,
        released_at=row.released_at,
        voided_at=row.voided_at,
    )


def parse_amount_usd(amount_usd: Any) -> Decimal:
    if isinstance(amount_usd, bool):
        raise ValidationError("amount_usd must be positive")
    try:
        amount = to_decimal(amount_usd)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("amount_usd must be a number") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount_usd must be positive")
    return amount


def parse_refund_percent(refund_percent: Any) -> int:
    if isinstance(refund_percent, bool) or not isinstance(refund_percent, int):
        raise ValidationError("refund_percent must be an integer between 0 and 100")
    if not 0 <= refund_percent <= 100:
        raise ValidationError("refund_percent must be an integer between 0 and 100")
    return refund_percent


class EscrowLedger:
    def __init__(self, db: Database, ledger: CreditLedger):
        self.db = db
        self.ledger = ledger

    def hold(
        self,
        account_id: str,
        amount_usd: Any,
        reference: Optional[str] = None,
        service: Optional[str] = None,
    ) -> EscrowHold:
        """Deduct ceil(amount_usd * 10) credits and record a held hold."""
        amount = parse_amount_usd(amount_usd)
        credits = usd_to_credits(amount)
        hold = EscrowHold(
            id=mint_hold_id(),
            account_id=account_id,
            amount_usd=amount,
            credits_held=credits,
            reference=reference,
            service=service,
            status=HELD,
            created_at=utcnow(),
        )

        with self.db.begin() as conn:
            self.ledger.debit(
                account_id,
                credits,
                ESCROW_HOLD,
                description=f"Escrow hold for {reference or 'unknown'}",
                related_hold_id=hold.id,
                conn=conn,
            )
            conn.execute(
                escrow_holds.insert().values(
                    id=hold.id,
                    account_id=account_id,
                    amount_usd=amount,
                    credits_held=credits,
                    reference=reference,
                    service=service,
                    status=HELD,
                    created_at=hold.created_at,
                )
            )

        logger.info(
            "escrow_hold_created",
            hold_id=hold.id,
            account_id=account_id,
            credits=credits,
            amount_usd=str(amount),
            reference=reference,
        )
        return hold

    def _end_hold(self, conn: Connection, hold_id: str, account_id: str, **values: Any) -> EscrowHold:
        """held -> terminal state; raises the right error when the hold can't move."""
        result = conn.execute(
            escrow_holds.update()
            .where(
                escrow_holds.c.id == hold_id,
                escrow_holds.c.account_id == account_id,
                escrow_holds.c.status == HELD,
            )
            .values(**values)
        )
        row = conn.execute(select(escrow_holds).where(escrow_holds.c.id == hold_id)).fetchone()
        if result.rowcount == 1:
            return _from_row(row)
        if row is None:
            raise HoldNotFoundError(hold_id)
        if row.account_id != account_id:
            raise ForbiddenError("Hold belongs to another account", hold_id=hold_id)
        raise HoldStateError(hold_id, row.status)

    def release(self, hold_id: str, account_id: str) -> EscrowHold:
        """Finalize a hold; the held credits are not returned."""
        with self.db.begin() as conn:
            hold = self._end_hold(conn, hold_id, account_id, status=RELEASED, released_at=utcnow())

        logger.info("escrow_hold_released", hold_id=hold_id, credits=hold.credits_held)
        return hold

    def void(self, hold_id: str, account_id: str, refund_percent: Any = 100) -> EscrowHold:
        """Cancel a hold, returning floor(credits_held * refund_percent / 100)."""
        percent = parse_refund_percent(refund_percent)
        with self.db.begin() as conn:
            hold = self._end_hold(
                conn, hold_id, account_id, status=VOIDED, refund_percent=percent, voided_at=utcnow()
            )
            refund = refund_credits(hold.credits_held, percent)
            conn.execute(
                escrow_holds.update()
                .where(escrow_holds.c.id == hold_id)
                .values(refunded_credits=refund)
            )
            if refund > 0:
                self.ledger.credit(
                    account_id,
                    refund,
                    ESCROW_REFUND,
                    description=f"Escrow refund {percent}% of {hold.credits_held} credits",
                    related_hold_id=hold_id,
                    conn=conn,
                )
            hold.refunded_credits = refund

        logger.info(
            "escrow_hold_voided",
            hold_id=hold_id,
            refunded=refund,
            credits_held=hold.credits_held,
            refund_percent=percent,
        )
        return hold

    def get_hold(self, hold_id: str, account_id: Optional[str] = None) -> EscrowHold:
        with self.db.connect() as conn:
            row = conn.execute(select(escrow_holds).where(escrow_holds.c.id == hold_id)).fetchone()
        if row is None:
            raise HoldNotFoundError(hold_id)
        if account_id is not None and row.account_id != account_id:
            raise ForbiddenError("Hold belongs to another account", hold_id=hold_id)
        return _from_row(row)

    def list_holds(self, account_id: str, status: Optional[str] = None, limit: int = 50) -> list[EscrowHold]:
        stmt = select(escrow_holds).where(escrow_holds.c.account_id == account_id)
        if status is not None:
            stmt = stmt.where(escrow_holds.c.status == status)
        stmt = stmt.order_by(escrow_holds.c.created_at.desc()).limit(limit)
        with self.db.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_from_row(row) for row in rows]
