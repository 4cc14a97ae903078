"""
Accounts and the append-only credit ledger.

Balances are integer milli-credits in the database and Decimal credits at the
API. Every balance change goes through CreditLedger.credit / debit /
debit_clamped, which update the balance with a single conditional UPDATE and
append a credit_transactions row carrying balance_after in the same
transaction. For each account:

    balance_after[k] == balance_after[k - 1] + amount[k]
"""

import hashlib
import secrets
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.engine import Connection

from .db import Database, accounts, credit_transactions, utcnow
from .errors import AccountNotFoundError, InsufficientBalanceError, ValidationError
from .pricing import Number, credits_to_units, units_to_credits

logger = structlog.get_logger()

CREDENTIAL_PREFIX = "kk_"

# Transaction types
PURCHASE = "purchase"
ESCROW_HOLD = "escrow_hold"
ESCROW_REFUND = "escrow_refund"
ADJUSTMENT = "adjustment"

ACCOUNT_TYPES = ("agent", "human")
ACCOUNT_STATUSES = ("active", "suspended")


def mint_credential() -> str:
    """New bearer credential: kk_ + 64 hex. Only its sha256 is stored."""
    return CREDENTIAL_PREFIX + secrets.token_hex(32)


def hash_credential(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


@dataclass
class Account:
    id: str
    label: Optional[str]
    account_type: str
    status: str
    credits: Decimal
    created_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class LedgerEntry:
    id: int
    account_id: str
    transaction_type: str
    amount: Decimal
    balance_after: Decimal
    description: Optional[str]
    related_payment_id: Optional[str]
    related_hold_id: Optional[str]
    created_at: datetime


@dataclass
class ClampedDebit:
    """Outcome of a best-effort deduction."""

    account_id: str
    requested: Decimal
    deducted: Decimal
    shortfall: Decimal
    balance_after: Decimal


def _account_from_row(row) -> Account:
    return Account(
        id=row.id,
        label=row.label,
        account_type=row.account_type,
        status=row.status,
        credits=units_to_credits(row.credits),
        created_at=row.created_at,
    )


def _entry_from_row(row) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        account_id=row.account_id,
        transaction_type=row.transaction_type,
        amount=units_to_credits(row.amount),
        balance_after=units_to_credits(row.balance_after),
        description=row.description,
        related_payment_id=row.related_payment_id,
        related_hold_id=row.related_hold_id,
        created_at=row.created_at,
    )


@contextmanager
def joined_transaction(db: Database, conn: Optional[Connection] = None) -> Iterator[Connection]:
    """Use the caller's open transaction if given, else run in a new one."""
    if conn is not None:
        yield conn
        return
    with db.begin() as new_conn:
        yield new_conn


class AccountStore:
    """Account records and credential lookup."""

    def __init__(self, db: Database):
        self.db = db

    def create_account(
        self,
        label: Optional[str] = None,
        account_type: str = "agent",
        conn: Optional[Connection] = None,
    ) -> tuple[Account, str]:
        """
        Create an account with zero balance.

        Returns (account, credential). The plaintext credential is only
        available here.
        """
        if account_type not in ACCOUNT_TYPES:
            raise ValidationError(f"Invalid account type: {account_type}")

        account_id = str(uuid.uuid4())
        credential = mint_credential()
        now = utcnow()
        with joined_transaction(self.db, conn) as c:
            c.execute(
                accounts.insert().values(
                    id=account_id,
                    api_key_hash=hash_credential(credential),
                    label=label,
                    account_type=account_type,
                    status="active",
                    credits=0,
                    created_at=now,
                    updated_at=now,
                )
            )

        logger.info("account_created", account_id=account_id, account_type=account_type)
        account = Account(
            id=account_id,
            label=label,
            account_type=account_type,
            status="active",
            credits=Decimal(0),
            created_at=now,
        )
        return account, credential

    def find_by_credential(self, credential: Optional[str]) -> Optional[Account]:
        if not credential:
            return None
        with self.db.connect() as conn:
            row = conn.execute(
                select(accounts).where(accounts.c.api_key_hash == hash_credential(credential))
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account(self, account_id: str, conn: Optional[Connection] = None) -> Account:
        stmt = select(accounts).where(accounts.c.id == account_id)
        if conn is not None:
            row = conn.execute(stmt).fetchone()
        else:
            with self.db.connect() as c:
                row = c.execute(stmt).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return _account_from_row(row)

    def set_status(self, account_id: str, status: str) -> None:
        if status not in ACCOUNT_STATUSES:
            raise ValidationError(f"Invalid account status: {status}")
        with self.db.begin() as conn:
            result = conn.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(status=status, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(account_id)
        logger.info("account_status_changed", account_id=account_id, status=status)


class CreditLedger:
    """
    The only writer of account balances.

    Each mutation accepts an optional open connection so it can join a larger
    atomic unit (claim, hold, void); without one it commits on its own.
    """

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _positive_units(amount: Number) -> int:
        units = credits_to_units(amount)
        if units <= 0:
            raise ValidationError(f"Credit amount must be positive, got {amount}")
        return units

    @staticmethod
    def _balance_units(conn: Connection, account_id: str) -> Optional[int]:
        row = conn.execute(select(accounts.c.credits).where(accounts.c.id == account_id)).fetchone()
        return row.credits if row else None

    @staticmethod
    def _append(
        conn: Connection,
        account_id: str,
        transaction_type: str,
        amount_units: int,
        balance_units: int,
        description: Optional[str],
        related_payment_id: Optional[str],
        related_hold_id: Optional[str],
    ) -> LedgerEntry:
        now = utcnow()
        result = conn.execute(
            credit_transactions.insert().values(
                account_id=account_id,
                transaction_type=transaction_type,
                amount=amount_units,
                balance_after=balance_units,
                description=description,
                related_payment_id=related_payment_id,
                related_hold_id=related_hold_id,
                created_at=now,
            )
        )
        return LedgerEntry(
            id=result.inserted_primary_key[0],
            account_id=account_id,
            transaction_type=transaction_type,
            amount=units_to_credits(amount_units),
            balance_after=units_to_credits(balance_units),
            description=description,
            related_payment_id=related_payment_id,
            related_hold_id=related_hold_id,
            created_at=now,
        )

    def credit(
        self,
        account_id: str,
        amount: Number,
        transaction_type: str = PURCHASE,
        description: Optional[str] = None,
        related_payment_id: Optional[str] = None,
        related_hold_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        units = self._positive_units(amount)
        with joined_transaction(self.db, conn) as c:
            result = c.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(credits=accounts.c.credits + units, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(account_id)
            balance = self._balance_units(c, account_id)
            entry = self._append(
                c, account_id, transaction_type, units, balance,
                description, related_payment_id, related_hold_id,
            )

        logger.info(
            "credits_added",
            account_id=account_id,
            amount=str(entry.amount),
            balance=str(entry.balance_after),
            transaction_type=transaction_type,
        )
        return entry

    def debit(
        self,
        account_id: str,
        amount: Number,
        transaction_type: str,
        description: Optional[str] = None,
        related_payment_id: Optional[str] = None,
        related_hold_id: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """Deduct exactly `amount` or raise InsufficientBalanceError."""
        units = self._positive_units(amount)
        with joined_transaction(self.db, conn) as c:
            result = c.execute(
                accounts.update()
                .where(accounts.c.id == account_id, accounts.c.credits >= units)
                .values(credits=accounts.c.credits - units, updated_at=utcnow())
            )
            if result.rowcount == 0:
                available = self._balance_units(c, account_id)
                if available is None:
                    raise AccountNotFoundError(account_id)
                raise InsufficientBalanceError(units_to_credits(units), units_to_credits(available))
            balance = self._balance_units(c, account_id)
            entry = self._append(
                c, account_id, transaction_type, -units, balance,
                description, related_payment_id, related_hold_id,
            )

        logger.info(
            "credits_deducted",
            account_id=account_id,
            amount=str(-entry.amount),
            balance=str(entry.balance_after),
            transaction_type=transaction_type,
        )
        return entry

    def debit_clamped(
        self,
        account_id: str,
        amount: Number,
        transaction_type: str,
        description: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> ClampedDebit:
        """Deduct min(amount, balance); never fails for lack of funds."""
        units = self._positive_units(amount)
        with joined_transaction(self.db, conn) as c:
            # Write first so the row is locked before its balance is read
            result = c.execute(
                accounts.update()
                .where(accounts.c.id == account_id)
                .values(updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(account_id)
            before = self._balance_units(c, account_id)
            deducted = min(units, before)
            if deducted > 0:
                c.execute(
                    accounts.update()
                    .where(accounts.c.id == account_id)
                    .values(credits=accounts.c.credits - deducted)
                )
                self._append(
                    c, account_id, transaction_type, -deducted, before - deducted,
                    description, None, None,
                )

        outcome = ClampedDebit(
            account_id=account_id,
            requested=units_to_credits(units),
            deducted=units_to_credits(deducted),
            shortfall=units_to_credits(units - deducted),
            balance_after=units_to_credits(before - deducted),
        )
        logger.info(
            "credits_deducted_clamped",
            account_id=account_id,
            requested=str(outcome.requested),
            deducted=str(outcome.deducted),
            shortfall=str(outcome.shortfall),
            transaction_type=transaction_type,
        )
        return outcome

    def balance(self, account_id: str) -> Decimal:
        with self.db.connect() as conn:
            units = self._balance_units(conn, account_id)
        if units is None:
            raise AccountNotFoundError(account_id)
        return units_to_credits(units)

    def transactions(
        self,
        account_id: str,
        limit: int = 50,
        before_id: Optional[int] = None,
    ) -> list[LedgerEntry]:
        """Newest first; page with before_id."""
        stmt = select(credit_transactions).where(credit_transactions.c.account_id == account_id)
        if before_id is not None:
            stmt = stmt.where(credit_transactions.c.id < before_id)
        stmt = stmt.order_by(credit_transactions.c.id.desc()).limit(limit)
        with self.db.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_entry_from_row(row) for row in rows]

    def verify_continuity(self, account_id: str) -> bool:
        """Replay the account's transactions and compare with the stored balance."""
        with self.db.connect() as conn:
            current = self._balance_units(conn, account_id)
            if current is None:
                raise AccountNotFoundError(account_id)
            rows = conn.execute(
                select(credit_transactions.c.amount, credit_transactions.c.balance_after)
                .where(credit_transactions.c.account_id == account_id)
                .order_by(credit_transactions.c.id)
            ).fetchall()

        running = 0
        for row in rows:
            running += row.amount
            if running != row.balance_after or running < 0:
                logger.error("ledger_discontinuity", account_id=account_id, balance_after=row.balance_after)
                return False
        return running == current
