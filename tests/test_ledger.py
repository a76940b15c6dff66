from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from app import ledger
from app.auth import Principal
from app.errors import DependencyLookupFailed, TransactionFailed, ValidationFailed
from app.ledger import ExpenseCreate, ExpenseLedgerWriter, validate_amount
from app.models import CashFlow, Expense, ExpenseCategory

OWNER = Principal(subject_id="user_owner", role="tenant_owner", tenant_id="T1")


def _payload(**overrides) -> ExpenseCreate:
    fields = {
        "category_id": 5,
        "description": "Electricity",
        "amount": Decimal("15000.00"),
        "expense_date": date(2026, 1, 15),
    }
    fields.update(overrides)
    return ExpenseCreate(**fields)


def test_apply_links_expense_and_cash_flow(session_factory, categories) -> None:
    with session_factory() as db:
        record = ExpenseLedgerWriter(db).apply(OWNER, _payload())

    assert record.amount == Decimal("15000.00")
    assert record.category_name == "Utilities"
    assert record.category_found

    with session_factory() as db:
        expense = db.query(Expense).one()
        cash_flow = db.query(CashFlow).one()
        assert expense.id == record.id
        assert cash_flow.id == record.cash_flow_id
        assert cash_flow.reference_id == expense.id
        assert cash_flow.reference_type == "expense"
        assert cash_flow.type == "expense"
        assert cash_flow.amount == Decimal("15000.00")
        assert cash_flow.transaction_date == date(2026, 1, 15)
        assert expense.created_by == "user_owner"


def test_missing_category_uses_sentinel_and_warns(session_factory, categories, caplog) -> None:
    with session_factory() as db:
        record = ExpenseLedgerWriter(db, strict_category_lookup=False).apply(OWNER, _payload(category_id=999))

    assert record.category_name == "Unknown"
    assert not record.category_found
    assert "category 999 not found" in caplog.text
    with session_factory() as db:
        assert db.query(CashFlow).one().category == "Unknown"


def test_strict_lookup_rolls_back(session_factory, categories, count_rows) -> None:
    with session_factory() as db:
        writer = ExpenseLedgerWriter(db, strict_category_lookup=True)
        with pytest.raises(DependencyLookupFailed):
            writer.apply(OWNER, _payload(category_id=999))

    assert count_rows(Expense) == 0
    assert count_rows(CashFlow) == 0


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("-0.01")])
def test_non_positive_amount_opens_no_transaction(session_factory, count_rows, amount) -> None:
    with session_factory() as db:
        with pytest.raises(ValidationFailed):
            ExpenseLedgerWriter(db).apply(OWNER, _payload(amount=amount))
        assert not db.in_transaction()

    assert count_rows(Expense) == 0
    assert count_rows(CashFlow) == 0


def test_validate_amount() -> None:
    assert validate_amount(Decimal("12.5")) == Decimal("12.50")
    assert validate_amount("7") == Decimal("7.00")
    assert validate_amount(3) == Decimal("3.00")
    with pytest.raises(ValidationFailed):
        validate_amount(12.5)
    with pytest.raises(ValidationFailed):
        validate_amount(Decimal("NaN"))
    with pytest.raises(ValidationFailed):
        validate_amount(Decimal("Infinity"))
    with pytest.raises(ValidationFailed):
        validate_amount(Decimal("1.005"))
    with pytest.raises(ValidationFailed):
        validate_amount("abc")
    with pytest.raises(ValidationFailed):
        validate_amount(Decimal("10000000000.00"))


def test_failure_mid_write_leaves_no_rows(session_factory, categories, count_rows) -> None:
    class FailingWriter(ExpenseLedgerWriter):
        def _append_cash_flow(self, expense, category_name):
            raise OperationalError("INSERT INTO cash_flows", {}, Exception("disk I/O error"))

    with session_factory() as db:
        with pytest.raises(TransactionFailed) as excinfo:
            FailingWriter(db).apply(OWNER, _payload())
        assert isinstance(excinfo.value.__cause__, OperationalError)
        assert excinfo.value.retryable

    assert count_rows(Expense) == 0
    assert count_rows(CashFlow) == 0


def test_ledger_constraint_violation_rolls_back_expense(session_factory, categories, count_rows) -> None:
    now = datetime.now(timezone.utc)
    with session_factory() as db:
        # occupies the (expense, 1) reference the next expense would take
        db.add(
            CashFlow(
                type="income",
                category="Sales",
                description="opening float",
                amount=Decimal("50.00"),
                transaction_date=date(2026, 1, 1),
                reference_id=1,
                reference_type="expense",
                created_at=now,
                updated_at=now,
            )
        )
        db.commit()

    with session_factory() as db:
        with pytest.raises(TransactionFailed):
            ExpenseLedgerWriter(db).apply(OWNER, _payload())

    assert count_rows(Expense) == 0
    assert count_rows(CashFlow) == 1


def test_transaction_exceeding_bound_rolls_back(session_factory, categories, count_rows, monkeypatch) -> None:
    ticks = iter([0.0, 30.0])
    monkeypatch.setattr(ledger, "time", SimpleNamespace(monotonic=lambda: next(ticks)))

    with session_factory() as db:
        with pytest.raises(TransactionFailed, match="exceeded"):
            ExpenseLedgerWriter(db, timeout_seconds=10).apply(OWNER, _payload())

    assert count_rows(Expense) == 0
    assert count_rows(CashFlow) == 0


def test_identical_payloads_create_distinct_records(session_factory, categories, count_rows) -> None:
    with session_factory() as db:
        first = ExpenseLedgerWriter(db).apply(OWNER, _payload())
        second = ExpenseLedgerWriter(db).apply(OWNER, _payload())

    assert first.id != second.id
    assert first.cash_flow_id != second.cash_flow_id
    assert count_rows(Expense) == 2
    assert count_rows(CashFlow) == 2


def test_category_rename_does_not_touch_history(session_factory, categories) -> None:
    with session_factory() as db:
        ExpenseLedgerWriter(db).apply(OWNER, _payload())

    with session_factory() as db:
        db.get(ExpenseCategory, 5).name = "Power & Water"
        db.commit()

    with session_factory() as db:
        ExpenseLedgerWriter(db).apply(OWNER, _payload(description="February"))

    with session_factory() as db:
        snapshots = [row.category for row in db.query(CashFlow).order_by(CashFlow.id)]
    assert snapshots == ["Utilities", "Power & Water"]


def test_admin_without_tenant_writes_untenanted_rows(session_factory, categories) -> None:
    admin = Principal(subject_id="user_admin", role="admin")
    with session_factory() as db:
        record = ExpenseLedgerWriter(db).apply(admin, _payload())
    assert record.tenant_id is None
    with session_factory() as db:
        assert db.query(CashFlow).one().tenant_id is None
