from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import ROLE_ADMIN, ROLE_TENANT_OWNER, Principal, get_principal, require_role
from app.config import settings
from app.db import SessionLocal
from app.errors import (
    DependencyLookupFailed,
    PermissionDenied,
    TransactionFailed,
    Unauthenticated,
    ValidationFailed,
)
from app.ledger import REFERENCE_EXPENSE, ExpenseCreate, ExpenseLedgerWriter
from app.models import CashFlow, Expense, ExpenseCategory
from app.reports import cash_flow_report, scope_to_tenant

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Retail Back Office")
api = APIRouter(prefix="/api/v1", dependencies=[Depends(get_principal)])


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _error(status_code: int, detail: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "meta": _meta()},
        headers=headers,
    )


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(request: Request, exc: Unauthenticated) -> JSONResponse:
    # cause is logged where it is raised; the client always gets the same body
    return _error(401, "unauthenticated", headers={"WWW-Authenticate": "Bearer"})


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    logger.info("forbidden %s %s: %s", request.method, request.url.path, exc)
    return _error(403, "permission denied")


@app.exception_handler(ValidationFailed)
async def validation_failed_handler(request: Request, exc: ValidationFailed) -> JSONResponse:
    return _error(422, str(exc))


@app.exception_handler(DependencyLookupFailed)
async def dependency_lookup_failed_handler(request: Request, exc: DependencyLookupFailed) -> JSONResponse:
    logger.warning("%s %s: %s", request.method, request.url.path, exc)
    return _error(404, str(exc))


@app.exception_handler(TransactionFailed)
async def transaction_failed_handler(request: Request, exc: TransactionFailed) -> JSONResponse:
    logger.error("%s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return _error(503, "transaction failed, retry the request", headers={"Retry-After": "1"})


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@api.get("/me", tags=["Identity"])
def read_me(principal: Principal = Depends(get_principal)) -> dict:
    return {"data": principal.to_dict(), "meta": _meta()}


@api.get("/finance/expense-categories", tags=["Finance"])
def list_expense_categories(
    is_active: Optional[bool] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    stmt = select(ExpenseCategory)
    if is_active is not None:
        stmt = stmt.where(ExpenseCategory.is_active == is_active)
    categories = db.execute(stmt.order_by(ExpenseCategory.name)).scalars().all()
    data = [
        {
            "category_id": category.id,
            "name": category.name,
            "description": category.description,
            "is_active": category.is_active,
            "created_at": category.created_at.isoformat(),
            "updated_at": category.updated_at.isoformat(),
        }
        for category in categories
    ]
    return {"data": data, "meta": _meta()}


@api.post("/finance/expenses", tags=["Finance"])
def create_expense(
    payload: ExpenseCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    record = ExpenseLedgerWriter(db).apply(principal, payload)
    warnings = [] if record.category_found else ["category_not_found"]
    return {"data": record.to_dict(), "meta": _meta(warnings=warnings)}


@api.get("/finance/expenses", tags=["Finance"])
def list_expenses(
    tenant_id: Optional[str] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict:
    query = scope_to_tenant(db.query(Expense), Expense.tenant_id, principal, tenant_id)
    if start_date is not None:
        query = query.filter(Expense.expense_date >= start_date)
    if end_date is not None:
        query = query.filter(Expense.expense_date <= end_date)
    expenses, next_cursor = _paginate_by_id(query, Expense, limit, cursor)
    snapshots = {}
    if expenses:
        snapshots = dict(
            db.execute(
                select(CashFlow.reference_id, CashFlow.category).where(
                    CashFlow.reference_type == REFERENCE_EXPENSE,
                    CashFlow.reference_id.in_([expense.id for expense in expenses]),
                )
            ).all()
        )
    data = [
        {
            "expense_id": expense.id,
            "tenant_id": expense.tenant_id,
            "category_id": expense.category_id,
            "category_name": snapshots.get(expense.id),
            "description": expense.description,
            "amount": str(expense.amount),
            "expense_date": expense.expense_date.isoformat(),
            "payment_method": expense.payment_method,
            "receipt_url": expense.receipt_url,
            "notes": expense.notes,
            "created_by": expense.created_by,
            "created_at": expense.created_at.isoformat(),
        }
        for expense in expenses
    ]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@api.get("/finance/cash-flow", tags=["Finance"])
def get_cash_flow(
    start_date: date = Query(...),
    end_date: date = Query(...),
    tenant_id: Optional[str] = Query(default=None),
    principal: Principal = Depends(require_role(ROLE_ADMIN, ROLE_TENANT_OWNER)),
    db: Session = Depends(get_db),
) -> dict:
    report = cash_flow_report(db, principal, start_date, end_date, tenant_id)
    return {"data": report, "meta": _meta()}


app.include_router(api)
