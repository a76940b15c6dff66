from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.auth import Principal
from app.config import settings
from app.errors import DependencyLookupFailed, TransactionFailed, ValidationFailed
from app.models import CashFlow, Expense, ExpenseCategory

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "Unknown"
CASH_FLOW_EXPENSE = "expense"
CASH_FLOW_INCOME = "income"
REFERENCE_EXPENSE = "expense"

CENTS = Decimal("0.01")
# Numeric(12, 2)
MAX_AMOUNT = Decimal("9999999999.99")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExpenseCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "category_id": 5,
                "description": "Electricity",
                "amount": "15000.00",
                "expense_date": "2026-01-15",
                "payment_method": "bank_transfer",
                "receipt_url": None,
                "notes": "January bill",
            }
        }
    }
    category_id: int
    description: str = Field(min_length=1)
    amount: Decimal
    expense_date: date
    payment_method: Optional[str] = None
    receipt_url: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class ExpenseRecord:
    id: int
    tenant_id: Optional[str]
    category_id: int
    category_name: str
    description: str
    amount: Decimal
    expense_date: date
    payment_method: Optional[str]
    receipt_url: Optional[str]
    notes: Optional[str]
    created_by: str
    created_at: datetime
    updated_at: datetime
    cash_flow_id: int
    category_found: bool

    def to_dict(self) -> dict:
        return {
            "expense_id": self.id,
            "tenant_id": self.tenant_id,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "description": self.description,
            "amount": str(self.amount),
            "expense_date": self.expense_date.isoformat(),
            "payment_method": self.payment_method,
            "receipt_url": self.receipt_url,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "cash_flow_id": self.cash_flow_id,
        }


def validate_amount(amount: Any) -> Decimal:
    # floats are refused outright so binary rounding never reaches the ledger
    if isinstance(amount, (bool, float)):
        raise ValidationFailed("amount must be a fixed-point decimal, not a float")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationFailed("amount is not a number") from exc
    if not value.is_finite():
        raise ValidationFailed("amount must be finite")
    if value <= 0:
        raise ValidationFailed("amount must be positive")
    if value > MAX_AMOUNT:
        raise ValidationFailed("amount is too large")
    quantized = value.quantize(CENTS)
    if quantized != value:
        raise ValidationFailed("amount has more than two decimal places")
    return quantized


def _bound_transaction(db: Session, timeout_seconds: float) -> None:
    if db.get_bind().dialect.name != "postgresql":
        return
    millis = int(timeout_seconds * 1000)
    db.execute(text(f"SET LOCAL statement_timeout = {millis}"))
    db.execute(text(f"SET LOCAL idle_in_transaction_session_timeout = {millis}"))


@contextmanager
def scoped_transaction(db: Session, timeout_seconds: float) -> Iterator[Session]:
    """Commit on clean exit, roll back on any exception.

    A unit whose body outlives ``timeout_seconds`` is rolled back instead of
    committed. The check runs before COMMIT, so time spent in the commit
    itself is only bounded on PostgreSQL, through ``statement_timeout``.
    Database errors surface as TransactionFailed.
    """
    started = time.monotonic()
    try:
        with db.begin():
            _bound_transaction(db, timeout_seconds)
            yield db
            elapsed = time.monotonic() - started
            if elapsed > timeout_seconds:
                raise TransactionFailed(
                    f"transaction exceeded {timeout_seconds:g}s (took {elapsed:.2f}s)"
                )
    except SQLAlchemyError as exc:
        logger.error("ledger transaction rolled back: %s", exc)
        raise TransactionFailed("ledger write failed") from exc


class ExpenseLedgerWriter:
    # not idempotent: the same payload applied twice records two expenses

    def __init__(
        self,
        db: Session,
        timeout_seconds: Optional[float] = None,
        strict_category_lookup: Optional[bool] = None,
    ) -> None:
        self.db = db
        if timeout_seconds is None:
            timeout_seconds = settings.ledger_transaction_timeout_seconds
        if strict_category_lookup is None:
            strict_category_lookup = settings.strict_category_lookup
        self.timeout_seconds = timeout_seconds
        self.strict_category_lookup = strict_category_lookup

    def apply(self, principal: Principal, payload: ExpenseCreate) -> ExpenseRecord:
        amount = validate_amount(payload.amount)

        with scoped_transaction(self.db, self.timeout_seconds):
            expense = self._insert_expense(principal, payload, amount)
            category_name = self._lookup_category_name(payload.category_id)
            if category_name is None:
                if self.strict_category_lookup:
                    raise DependencyLookupFailed(
                        f"expense category {payload.category_id} not found"
                    )
                logger.warning(
                    "expense %s: category %s not found, ledger snapshot set to %r",
                    expense.id,
                    payload.category_id,
                    UNKNOWN_CATEGORY,
                )
            cash_flow = self._append_cash_flow(expense, category_name or UNKNOWN_CATEGORY)
            record = ExpenseRecord(
                id=expense.id,
                tenant_id=expense.tenant_id,
                category_id=expense.category_id,
                category_name=cash_flow.category,
                description=expense.description,
                amount=amount,
                expense_date=expense.expense_date,
                payment_method=expense.payment_method,
                receipt_url=expense.receipt_url,
                notes=expense.notes,
                created_by=expense.created_by,
                created_at=expense.created_at,
                updated_at=expense.updated_at,
                cash_flow_id=cash_flow.id,
                category_found=category_name is not None,
            )

        logger.info(
            "expense %s recorded for tenant %s by %s (cash_flow %s)",
            record.id,
            record.tenant_id,
            record.created_by,
            record.cash_flow_id,
        )
        return record

    def _insert_expense(self, principal: Principal, payload: ExpenseCreate, amount: Decimal) -> Expense:
        now = _now()
        expense = Expense(
            tenant_id=principal.tenant_id,
            category_id=payload.category_id,
            description=payload.description,
            amount=amount,
            expense_date=payload.expense_date,
            payment_method=payload.payment_method or None,
            receipt_url=payload.receipt_url or None,
            notes=payload.notes or None,
            created_by=principal.subject_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(expense)
        self.db.flush()
        return expense

    def _lookup_category_name(self, category_id: int) -> Optional[str]:
        return self.db.execute(
            select(ExpenseCategory.name).where(ExpenseCategory.id == category_id)
        ).scalar_one_or_none()

    def _append_cash_flow(self, expense: Expense, category_name: str) -> CashFlow:
        now = _now()
        cash_flow = CashFlow(
            tenant_id=expense.tenant_id,
            type=CASH_FLOW_EXPENSE,
            category=category_name,
            description=expense.description,
            amount=expense.amount,
            transaction_date=expense.expense_date,
            reference_id=expense.id,
            reference_type=REFERENCE_EXPENSE,
            created_at=now,
            updated_at=now,
        )
        self.db.add(cash_flow)
        self.db.flush()
        return cash_flow
