from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ValidationError
from groups import GroupResolver, GroupSelector, group_membership, resolve_effective_scope
from models import EditScope, GroupKind, Transaction, TransactionType
from storage import TransactionStore


def _installment(index: int = 3, total: int = 5) -> Transaction:
    return Transaction(
        id=10,
        user_id=1,
        date=date(2024, 3, 10),
        description="Laptop",
        type=TransactionType.expense,
        amount_cents=25000,
        account_id=1,
        category_id=1,
        installment_group_id="inst-1",
        installment_index=index,
        installment_total=total,
    )


def _occurrence() -> Transaction:
    return Transaction(
        id=20,
        user_id=1,
        date=date(2024, 4, 1),
        description="Rent",
        type=TransactionType.expense,
        amount_cents=150000,
        account_id=1,
        category_id=1,
        recurrence_group_id="rec-1",
        recurrence_rule={
            "interval": 1,
            "unit": "month",
            "indefinite": False,
            "occurrences": 6,
        },
    )


def _plain() -> Transaction:
    return Transaction(
        id=30,
        user_id=1,
        date=date(2024, 4, 2),
        description="Coffee",
        type=TransactionType.expense,
        amount_cents=500,
        account_id=1,
        category_id=1,
    )


def _resolver() -> GroupResolver:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return GroupResolver(TransactionStore(Session(engine), user_id=1))


def test_group_membership():
    assert group_membership(_installment()) == (GroupKind.installment, "inst-1")
    assert group_membership(_occurrence()) == (GroupKind.recurrence, "rec-1")
    assert group_membership(_plain()) is None


@pytest.mark.parametrize("requested", [None, "only", "from_here", "from_first"])
def test_ungrouped_rows_always_resolve_to_only(requested):
    assert resolve_effective_scope(_plain(), requested) == EditScope.only


def test_grouped_rows_keep_requested_scope():
    assert resolve_effective_scope(_installment(), "from_here") == EditScope.from_here
    assert (
        resolve_effective_scope(_occurrence(), EditScope.from_first)
        == EditScope.from_first
    )


def test_grouped_rows_require_a_scope():
    with pytest.raises(ValidationError):
        resolve_effective_scope(_installment(), None)


def test_delete_selector_for_installments():
    resolver = _resolver()
    target = _installment(index=3)
    assert resolver.delete_selector(target, EditScope.only) is None
    assert resolver.delete_selector(target, EditScope.from_here) == GroupSelector(
        GroupKind.installment, "inst-1", min_index=3
    )
    assert resolver.delete_selector(target, EditScope.from_first) == GroupSelector(
        GroupKind.installment, "inst-1"
    )


def test_delete_selector_for_recurrences_uses_date():
    resolver = _resolver()
    target = _occurrence()
    assert resolver.delete_selector(target, EditScope.from_here) == GroupSelector(
        GroupKind.recurrence, "rec-1", min_date=date(2024, 4, 1)
    )
    assert resolver.delete_selector(_plain(), EditScope.from_first) is None


def test_occurrence_position_falls_back_to_first():
    rows = [_occurrence()]
    assert GroupResolver.occurrence_position(rows, rows[0]) == 0
    assert GroupResolver.occurrence_position(rows, _plain()) == 0


def test_rule_for_rejects_corrupt_snapshot():
    target = _occurrence()
    target.recurrence_rule = {"interval": 0, "unit": "month"}
    with pytest.raises(ValidationError):
        GroupResolver.rule_for(target)
