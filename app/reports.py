from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.auth import Principal
from app.errors import PermissionDenied, ValidationFailed
from app.ledger import CASH_FLOW_EXPENSE, CASH_FLOW_INCOME, CENTS
from app.models import CashFlow

MAX_REPORT_DAYS = 366


def scope_to_tenant(stmt, column, principal: Principal, tenant_id: Optional[str] = None):
    # admins see every tenant unless they ask for one; everyone else is
    # pinned to their own
    if principal.is_admin:
        if tenant_id is not None:
            stmt = stmt.where(column == tenant_id)
        return stmt
    if tenant_id is not None and tenant_id != principal.tenant_id:
        raise PermissionDenied("cannot read another tenant's records")
    return stmt.where(column == principal.tenant_id)


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS)


def _signed(entry: CashFlow) -> Decimal:
    amount = _to_decimal(entry.amount)
    return amount if entry.type == CASH_FLOW_INCOME else -amount


def cash_flow_report(
    db: Session,
    principal: Principal,
    start_date: date,
    end_date: date,
    tenant_id: Optional[str] = None,
) -> dict:
    if end_date < start_date:
        raise ValidationFailed("end_date is before start_date")
    if (end_date - start_date).days + 1 > MAX_REPORT_DAYS:
        raise ValidationFailed(f"report period is limited to {MAX_REPORT_DAYS} days")

    entries_stmt = scope_to_tenant(
        select(CashFlow).where(
            CashFlow.transaction_date >= start_date,
            CashFlow.transaction_date <= end_date,
        ),
        CashFlow.tenant_id,
        principal,
        tenant_id,
    ).order_by(CashFlow.transaction_date, CashFlow.created_at, CashFlow.id)
    entries = db.execute(entries_stmt).scalars().all()

    opening_stmt = scope_to_tenant(
        select(
            func.coalesce(
                func.sum(
                    case(
                        (CashFlow.type == CASH_FLOW_INCOME, CashFlow.amount),
                        else_=-CashFlow.amount,
                    )
                ),
                0,
            )
        ).where(CashFlow.transaction_date < start_date),
        CashFlow.tenant_id,
        principal,
        tenant_id,
    )
    opening_balance = _to_decimal(db.execute(opening_stmt).scalar())

    total_income = sum(
        (_to_decimal(e.amount) for e in entries if e.type == CASH_FLOW_INCOME), Decimal("0.00")
    )
    total_expenses = sum(
        (_to_decimal(e.amount) for e in entries if e.type == CASH_FLOW_EXPENSE), Decimal("0.00")
    )
    net_cash_flow = total_income - total_expenses

    by_day: dict[date, list[CashFlow]] = {}
    for entry in entries:
        by_day.setdefault(entry.transaction_date, []).append(entry)

    daily_flow = []
    running_balance = opening_balance
    day = start_date
    while day <= end_date:
        day_entries = by_day.get(day, [])
        income = sum(
            (_to_decimal(e.amount) for e in day_entries if e.type == CASH_FLOW_INCOME), Decimal("0.00")
        )
        expenses = sum(
            (_to_decimal(e.amount) for e in day_entries if e.type == CASH_FLOW_EXPENSE), Decimal("0.00")
        )
        running_balance += income - expenses
        daily_flow.append(
            {
                "date": day.isoformat(),
                "income": str(income),
                "expenses": str(expenses),
                "net_flow": str(income - expenses),
                "running_balance": str(running_balance),
            }
        )
        day += timedelta(days=1)

    return {
        "period": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        "summary": {
            "total_income": str(total_income),
            "total_expenses": str(total_expenses),
            "net_cash_flow": str(net_cash_flow),
            "opening_balance": str(opening_balance),
            "closing_balance": str(opening_balance + net_cash_flow),
        },
        "entries": [
            {
                "cash_flow_id": e.id,
                "type": e.type,
                "category": e.category,
                "description": e.description,
                "amount": str(_to_decimal(e.amount)),
                "signed_amount": str(_signed(e)),
                "transaction_date": e.transaction_date.isoformat(),
                "reference_id": e.reference_id,
                "reference_type": e.reference_type,
                "created_at": e.created_at.isoformat(),
            }
            for e in entries
        ],
        "daily_flow": daily_flow,
    }
