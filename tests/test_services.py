import csv
from datetime import date
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import CategoryKind, TransactionType
from periods import parse_month
from schemas import AccountIn, CategoryIn, TransactionCreateIn
from services import (
    AccountService,
    CategoryService,
    CSVService,
    MetricsService,
    TransactionFilters,
    TransactionService,
)


def _setup(session: Session) -> dict[str, int]:
    accounts = AccountService(session, user_id=1)
    categories = CategoryService(session, user_id=1)
    checking = accounts.create(AccountIn(name="Checking", initial_balance_cents=100000))
    savings = accounts.create(
        AccountIn(
            name="Savings",
            initial_balance_cents=50000,
            include_in_monthly_summary=False,
        )
    )
    food = categories.create(CategoryIn(name="Food"))
    groceries = categories.create(CategoryIn(name="Groceries", parent_id=food.id))
    salary = categories.create(
        CategoryIn(name="Salary", allowed_type=CategoryKind.income)
    )
    return {
        "checking": checking.id,
        "savings": savings.id,
        "food": food.id,
        "groceries": groceries.id,
        "salary": salary.id,
    }


def _expense(ids: dict[str, int], **overrides) -> TransactionCreateIn:
    data = {
        "date": date(2024, 5, 3),
        "description": "Weekly market",
        "type": TransactionType.expense,
        "amount_cents": 20000,
        "account_id": ids["checking"],
        "category_id": ids["groceries"],
    }
    data.update(overrides)
    return TransactionCreateIn(**data)


def _transfer(ids: dict[str, int], **overrides) -> TransactionCreateIn:
    data = {
        "date": date(2024, 5, 10),
        "description": "Move to savings",
        "type": TransactionType.transfer,
        "amount_cents": 10000,
        "account_from_id": ids["checking"],
        "account_to_id": ids["savings"],
    }
    data.update(overrides)
    return TransactionCreateIn(**data)


def test_category_type_must_match_transaction_type():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        with pytest.raises(ValueError, match="Category type mismatch"):
            service.create(_expense(ids, category_id=ids["salary"]))

        both = CategoryService(session, user_id=1).create(
            CategoryIn(name="Refunds", allowed_type=CategoryKind.both)
        )
        rows = service.create(
            _expense(ids, type=TransactionType.income, category_id=both.id)
        )
        assert rows[0].type == TransactionType.income


def test_transfer_shape_is_normalized():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)

        rows = service.create(
            _transfer(ids, account_id=ids["checking"], category_id=ids["food"])
        )
        assert rows[0].account_id is None
        assert rows[0].category_id is None
        assert rows[0].account_to_id == ids["savings"]

        with pytest.raises(ValueError):
            _transfer(ids, account_to_id=None)
        with pytest.raises(ValueError, match="different"):
            service.create(_transfer(ids, account_to_id=ids["checking"]))


def test_unknown_references_are_rejected():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        with pytest.raises(ValueError, match="Account not found"):
            service.create(_expense(ids, account_id=999))
        with pytest.raises(ValueError, match="Category not found"):
            service.create(_expense(ids, category_id=999))


def test_list_filters():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        service.create(_expense(ids, note="Organic vegetables"))
        service.create(_transfer(ids))
        service.create(
            _expense(ids, date=date(2024, 6, 1), description="Lunch", category_id=ids["food"])
        )
        service.create(
            _expense(
                ids,
                date=date(2024, 5, 20),
                description="Dinner",
                category_id=ids["food"],
                cleared=True,
            )
        )
        may = parse_month("2024-05")

        def descriptions(**kwargs):
            return [t.description for t in service.list(TransactionFilters(**kwargs))]

        assert descriptions(period=may) == ["Weekly market", "Move to savings", "Dinner"]
        assert descriptions(search="ORGANIC") == ["Weekly market"]
        assert descriptions(account_ids=[ids["savings"]]) == ["Move to savings"]
        assert descriptions(period=may, category_ids=[ids["food"]]) == [
            "Weekly market",
            "Dinner",
        ]
        assert descriptions(category_ids=[ids["groceries"]]) == ["Weekly market"]
        assert descriptions(period=may, uncleared_only=True) == [
            "Weekly market",
            "Move to savings",
        ]


def test_set_cleared_and_delete_many():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        first = service.create(_expense(ids))[0]
        second = service.create(_transfer(ids))[0]
        third = service.create(_expense(ids, description="Bakery"))[0]

        updated = service.set_cleared([first.id, second.id], True)
        assert {t.id for t in updated} == {first.id, second.id}
        assert service.get(first.id).cleared is True
        assert service.get(third.id).cleared is False

        assert service.delete_many([first.id, third.id, 999]) == 2
        assert [t.id for t in service.list(TransactionFilters())] == [second.id]


def test_month_summary_balances():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        service.create(_expense(ids))
        service.create(
            _expense(
                ids,
                date=date(2024, 5, 5),
                description="Paycheck",
                type=TransactionType.income,
                amount_cents=30000,
                category_id=ids["salary"],
            )
        )
        service.create(_transfer(ids))
        service.create(_expense(ids, date=date(2024, 6, 2), amount_cents=999))

        summary = MetricsService(session, user_id=1).month_summary(parse_month("2024-05"))
        balances = {b.name: b.balance_cents for b in summary.balances}
        assert summary.month == "2024-05"
        assert balances == {"Checking": 100000, "Savings": 60000}
        assert summary.summary_total_cents == 100000


def test_month_summary_cache_is_invalidated_by_writes():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        may = parse_month("2024-05")
        before = service.metrics.month_summary(may)
        assert before.summary_total_cents == 100000

        service.create(_expense(ids))
        after = service.metrics.month_summary(may)
        assert after.summary_total_cents == 80000


def test_csv_export_labels_and_sanitizes():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, user_id=1)
        service.create(_expense(ids, description="=HYPERLINK(1)", amount_cents=1250))
        service.create(_transfer(ids))

        content = CSVService(session, user_id=1).export(
            service.list(TransactionFilters(period=parse_month("2024-05")))
        )
        rows = list(csv.reader(StringIO(content)))

        assert rows[0] == [
            "date",
            "description",
            "category",
            "account",
            "amount",
            "type",
            "cleared",
            "note",
        ]
        assert rows[1] == [
            "2024-05-03",
            "\t=HYPERLINK(1)",
            "Groceries",
            "Checking",
            "12.50",
            "expense",
            "false",
            "",
        ]
        assert rows[2][2:6] == ["Transfer", "Checking -> Savings", "100.00", "transfer"]


def test_account_delete_and_archive():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        accounts = AccountService(session, user_id=1)
        TransactionService(session, user_id=1).create(_transfer(ids))

        with pytest.raises(ValueError):
            accounts.delete(ids["savings"])
        accounts.archive(ids["savings"])
        assert [a.name for a in accounts.list_all()] == ["Checking"]
        assert len(accounts.list_all(include_archived=True)) == 2

        spare = accounts.create(AccountIn(name="Spare"))
        accounts.delete(spare.id)
        with pytest.raises(ValueError, match="Account not found"):
            accounts.get(spare.id)


def test_category_tree_and_delete():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        ids = _setup(session)
        categories = CategoryService(session, user_id=1)
        produce = categories.create(CategoryIn(name="Produce", parent_id=ids["groceries"]))

        tree = categories.tree()
        assert [node.name for node in tree] == ["Food", "Salary"]
        assert tree[0].children[0].name == "Groceries"
        assert tree[0].children[0].children[0].name == "Produce"
        assert categories.expand_selection([ids["food"]]) == {
            ids["food"],
            ids["groceries"],
            produce.id,
        }

        with pytest.raises(ValueError):
            categories.update(
                ids["food"], CategoryIn(name="Food", parent_id=produce.id)
            )

        categories.delete(ids["groceries"])
        assert categories.get(produce.id).parent_id == ids["food"]

        TransactionService(session, user_id=1).create(
            _expense(ids, category_id=ids["food"])
        )
        with pytest.raises(ValueError, match="used by transactions"):
            categories.delete(ids["food"])
