# Meterwise Entities
# Typed rows for every table the engine touches. Money is always
# decimal.Decimal quantized to MONEY_PLACES; floats never carry cost.

import calendar
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from errors import ValidationError

# ── Money ─────────────────────────────────────────────────────────────

MONEY_PLACES = 4
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)  # 0.0001
ZERO = Decimal("0").quantize(MONEY_QUANTUM)


def to_decimal(value) -> Decimal:
    """Exact Decimal from str/int/Decimal/float (floats go through repr)."""
    if value is None:
        raise ValidationError("amount is required")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"not a decimal amount: {value!r}")


def money(value) -> Decimal:
    """Round to the fixed money precision, half-up."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def optional_money(value) -> Optional[Decimal]:
    return None if value is None else money(value)


# ── Calendar months ───────────────────────────────────────────────────


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def month_start(ts: float) -> float:
    """First instant (UTC) of the calendar month containing ts."""
    d = _utc(ts)
    return datetime(d.year, d.month, 1, tzinfo=timezone.utc).timestamp()


def add_months(ts: float, months: int) -> float:
    """Shift ts by whole calendar months, clipping the day to the month's end."""
    d = _utc(ts)
    total = d.month - 1 + months
    year = d.year + total // 12
    month = total % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day).timestamp()


def months_elapsed(start: float, now: float) -> int:
    """Number of full calendar months between start and now (0 if now < start + 1 month)."""
    s, n = _utc(start), _utc(now)
    k = (n.year - s.year) * 12 + (n.month - s.month)
    if k > 0 and add_months(start, k) > now:
        k -= 1
    return max(k, 0)


# ── Enums ─────────────────────────────────────────────────────────────


class UsageCategory(str, Enum):
    CV_PARSING = "cv_parsing"                    # rawQuantity: file size in KB
    QUESTION_GENERATION = "question_generation"  # rawQuantity: prompt + completion tokens
    VIDEO_INTERVIEW = "video_interview"          # rawQuantity: duration in minutes


# Invoice line items are emitted in this order
CATEGORY_ORDER = [c.value for c in UsageCategory]


def parse_category(value) -> UsageCategory:
    try:
        return UsageCategory(value)
    except ValueError:
        raise ValidationError(
            f"unknown usage category: {value!r}", allowed=CATEGORY_ORDER,
        )


class BillingStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"


# Statuses that stop new usage from being debited
BLOCKED_STATUSES = frozenset({BillingStatus.PAST_DUE.value, BillingStatus.SUSPENDED.value})


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RechargeStatus(str, Enum):
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RechargeReason(str, Enum):
    LOW_BALANCE = "low_balance"
    INITIAL = "initial"
    MANUAL = "manual"


class TxType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


def _jsonable(d: dict) -> dict:
    out = {}
    for k, v in d.items():
        if isinstance(v, Decimal):
            out[k] = str(v)
        elif isinstance(v, Enum):
            out[k] = v.value
        elif isinstance(v, list):
            out[k] = [_jsonable(i) if isinstance(i, dict) else i for i in v]
        else:
            out[k] = v
    return out


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ── Pricing ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PriceQuote:
    """Cost triple for one billable action, captured at resolve time."""
    category: str
    raw_quantity: Decimal
    unit_price: Decimal
    base_cost: Decimal
    margin_percent: Decimal
    final_cost: Decimal

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


# ── Usage ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageRecord:
    """One billable action. Never updated after insert."""
    id: str
    company_id: str
    category: str
    raw_quantity: Decimal
    base_cost: Decimal
    margin_percent: Decimal
    final_cost: Decimal
    created_at: float
    job_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "UsageRecord":
        return cls(
            id=row["id"],
            company_id=row["company_id"],
            category=row["category"],
            raw_quantity=to_decimal(row["raw_quantity"]),
            base_cost=money(row["base_cost"]),
            margin_percent=to_decimal(row["margin_percent"]),
            final_cost=money(row["final_cost"]),
            created_at=float(row["created_at"]),
            job_id=row["job_id"],
            idempotency_key=row["idempotency_key"],
        )

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


# ── Company billing ───────────────────────────────────────────────────


@dataclass
class CompanyBilling:
    """Wallet + spend state for one company. Mutated only by WalletLedger."""
    company_id: str
    billing_status: str = BillingStatus.TRIAL.value
    wallet_balance: Decimal = ZERO
    current_month_spent: Decimal = ZERO
    total_spent: Decimal = ZERO
    current_month_start: float = 0.0
    monthly_spend_cap: Optional[Decimal] = None
    auto_recharge_enabled: bool = True
    auto_recharge_threshold: Decimal = ZERO
    auto_recharge_amount: Decimal = ZERO
    payment_provider: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_method_last4: Optional[str] = None
    payment_method_brand: Optional[str] = None
    payment_method_exp: Optional[str] = None
    recharge_in_flight: bool = False
    past_due_since: float = 0.0
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row) -> "CompanyBilling":
        cap = row["monthly_spend_cap"]
        return cls(
            company_id=row["company_id"],
            billing_status=row["billing_status"],
            wallet_balance=money(row["wallet_balance"]),
            current_month_spent=money(row["current_month_spent"]),
            total_spent=money(row["total_spent"]),
            current_month_start=float(row["current_month_start"]),
            monthly_spend_cap=None if cap is None else money(cap),
            auto_recharge_enabled=bool(row["auto_recharge_enabled"]),
            auto_recharge_threshold=money(row["auto_recharge_threshold"]),
            auto_recharge_amount=money(row["auto_recharge_amount"]),
            payment_provider=row["payment_provider"],
            payment_method_id=row["payment_method_id"],
            payment_method_last4=row["payment_method_last4"],
            payment_method_brand=row["payment_method_brand"],
            payment_method_exp=row["payment_method_exp"],
            recharge_in_flight=bool(row["recharge_in_flight"]),
            past_due_since=float(row["past_due_since"] or 0),
            created_at=float(row["created_at"] or 0),
            updated_at=float(row["updated_at"] or 0),
        )

    @property
    def has_payment_method(self) -> bool:
        return bool(self.payment_method_id)

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class WalletTransaction:
    tx_id: str
    company_id: str
    tx_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str = ""
    usage_record_id: Optional[str] = None
    recharge_id: Optional[str] = None
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row) -> "WalletTransaction":
        return cls(
            tx_id=row["tx_id"],
            company_id=row["company_id"],
            tx_type=row["tx_type"],
            amount=money(row["amount"]),
            balance_before=money(row["balance_before"]),
            balance_after=money(row["balance_after"]),
            description=row["description"] or "",
            usage_record_id=row["usage_record_id"],
            recharge_id=row["recharge_id"],
            created_at=float(row["created_at"]),
        )

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass
class Recharge:
    recharge_id: str
    company_id: str
    amount: Decimal
    reason: str
    status: str = RechargeStatus.IN_FLIGHT.value
    provider_ref: Optional[str] = None
    error: str = ""
    created_at: float = 0.0
    completed_at: float = 0.0

    @classmethod
    def from_row(cls, row) -> "Recharge":
        return cls(
            recharge_id=row["recharge_id"],
            company_id=row["company_id"],
            amount=money(row["amount"]),
            reason=row["reason"],
            status=row["status"],
            provider_ref=row["provider_ref"],
            error=row["error"] or "",
            created_at=float(row["created_at"]),
            completed_at=float(row["completed_at"] or 0),
        )

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


# ── Invoice ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class InvoiceLineItem:
    category: str
    amount: Decimal
    quantity: Decimal = Decimal("0")
    record_count: int = 0

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, d: dict) -> "InvoiceLineItem":
        return cls(
            category=d["category"],
            amount=money(d["amount"]),
            quantity=to_decimal(d.get("quantity", "0")),
            record_count=int(d.get("record_count", 0)),
        )


@dataclass(frozen=True)
class Invoice:
    """Immutable invoice snapshot over usage in [period_start, period_end)."""
    id: str
    invoice_number: str
    company_id: str
    status: str
    line_items: list
    subtotal: Decimal
    tax_rate: Optional[Decimal]
    tax_amount: Decimal
    total: Decimal
    period_start: float
    period_end: float
    created_at: float
    description: str = ""
    refunds_invoice_id: Optional[str] = None
    paid_at: float = 0.0

    def to_dict(self) -> dict:
        d = _jsonable({k: v for k, v in asdict(self).items() if k != "line_items"})
        d["line_items"] = [li.to_dict() for li in self.line_items]
        return d
