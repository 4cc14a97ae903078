"""
Metered service usage.

Partner services report operations per account; costs are priced in USD per
operation, converted to credits at 10 credits per dollar, and deducted with a
clamped debit so a balance can run down to zero but never below it.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Optional

import structlog

from .errors import AccountNotFoundError, AuthorizationError, ForbiddenError, ValidationError
from .ledger import AccountStore, CreditLedger
from .pricing import CREDIT_UNITS, CREDITS_PER_USD, to_decimal

logger = structlog.get_logger()

# USD per unit of each metered operation
SERVICE_COSTS: dict[str, dict[str, Decimal]] = {
    "keyfetch": {
        "proxy_request": Decimal("0.01"),
    },
    "keyroute": {
        "tunnel_hour": Decimal("0.10"),
        "data_gb": Decimal("0.05"),
    },
}

DEFAULT_OPERATION_COST = Decimal("0.01")

MILLI = Decimal(1) / CREDIT_UNITS


def _require_service(service: str) -> dict[str, Decimal]:
    costs = SERVICE_COSTS.get(service)
    if costs is None:
        raise ValidationError("Invalid service", service=service, valid_services=sorted(SERVICE_COSTS))
    return costs


def _quantity(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("quantity must be a positive number")
    try:
        quantity = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("quantity must be a positive number") from None
    if not quantity.is_finite() or quantity <= 0:
        raise ValidationError("quantity must be a positive number")
    return quantity


def operation_cost_usd(service: str, operation: Optional[str]) -> Decimal:
    costs = _require_service(service)
    if not operation:
        return DEFAULT_OPERATION_COST
    return costs.get(operation, DEFAULT_OPERATION_COST)


def usd_to_credit_amount(usd: Decimal) -> Decimal:
    """USD -> credits, rounded up to the ledger's 0.001 precision."""
    return (usd * CREDITS_PER_USD).quantize(MILLI, rounding=ROUND_CEILING)


@dataclass
class UsageRecord:
    account_id: str
    operation: Optional[str] = None
    quantity: Decimal = Decimal(1)
    timestamp: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageRecord":
        return cls(
            account_id=data.get("account_id") or data.get("agent_id") or "",
            operation=data.get("operation"),
            quantity=_quantity(data.get("quantity", 1)),
            timestamp=data.get("timestamp"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class AccountUsage:
    account_id: str
    credits_deducted: Decimal = Decimal(0)
    shortfall: Decimal = Decimal(0)
    new_balance: Optional[Decimal] = None
    operations_count: int = 0
    error: Optional[str] = None


@dataclass
class UsageReport:
    processed: int
    total_credits_deducted: Decimal
    results: list[AccountUsage]


@dataclass
class VerifyResult:
    valid: bool
    account_id: str
    account_type: str
    balance: Decimal
    cost_per_unit: Decimal
    total_cost: Decimal
    can_afford: bool
    estimated_operations: int


class UsageMeter:
    def __init__(self, accounts: AccountStore, ledger: CreditLedger):
        self.accounts = accounts
        self.ledger = ledger

    def report(self, service: str, records: list[Any], region: Optional[str] = None) -> UsageReport:
        costs = _require_service(service)
        if not records:
            raise ValidationError("Records array is required")

        parsed = [r if isinstance(r, UsageRecord) else UsageRecord.from_dict(r) for r in records]

        # account -> (usd total, operation count), in first-seen order
        grouped: "OrderedDict[str, list[Any]]" = OrderedDict()
        for record in parsed:
            if not record.account_id:
                continue
            usd = costs.get(record.operation or "", DEFAULT_OPERATION_COST) * _quantity(record.quantity)
            entry = grouped.setdefault(record.account_id, [Decimal(0), 0])
            entry[0] += usd
            entry[1] += 1

        results = []
        total = Decimal(0)
        for account_id, (usd, count) in grouped.items():
            amount = usd_to_credit_amount(usd)
            if amount <= 0:
                continue
            try:
                outcome = self.ledger.debit_clamped(
                    account_id,
                    amount,
                    f"{service}_usage",
                    description=f"{service} usage: {count} operations from {region or 'unknown'}",
                )
            except AccountNotFoundError:
                results.append(AccountUsage(account_id=account_id, operations_count=count, error="Account not found"))
                continue

            total += outcome.deducted
            results.append(
                AccountUsage(
                    account_id=account_id,
                    credits_deducted=outcome.deducted,
                    shortfall=outcome.shortfall,
                    new_balance=outcome.balance_after,
                    operations_count=count,
                )
            )

        logger.info(
            "usage_reported",
            service=service,
            region=region,
            records=len(parsed),
            accounts=len(grouped),
            total_deducted=str(total),
        )
        return UsageReport(processed=len(parsed), total_credits_deducted=total, results=results)

    def verify(
        self,
        credential: str,
        service: str,
        operation: Optional[str] = None,
        quantity: Any = 1,
    ) -> VerifyResult:
        """Can the holder of `credential` afford `quantity` x `operation`?"""
        cost_usd = operation_cost_usd(service, operation)
        qty = _quantity(quantity)

        account = self.accounts.find_by_credential(credential)
        if account is None:
            raise AuthorizationError("Invalid token")
        if not account.is_active:
            raise ForbiddenError("Account is not active", status=account.status)

        cost_per_unit = usd_to_credit_amount(cost_usd)
        total_cost = usd_to_credit_amount(cost_usd * qty)
        estimated = (account.credits / cost_per_unit).to_integral_value(rounding=ROUND_FLOOR)
        return VerifyResult(
            valid=True,
            account_id=account.id,
            account_type=account.account_type,
            balance=account.credits,
            cost_per_unit=cost_per_unit,
            total_cost=total_cost,
            can_afford=account.credits >= total_cost,
            estimated_operations=int(estimated),
        )
