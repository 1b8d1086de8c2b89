from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.sql.elements import ColumnElement

from errors import ValidationError
from models import EditScope, GroupKind, Transaction
from recurrence import RecurrenceRule
from storage import TransactionStore


def group_membership(txn: Transaction) -> Optional[tuple[GroupKind, str]]:
    if txn.installment_group_id:
        return GroupKind.installment, txn.installment_group_id
    if txn.recurrence_group_id:
        return GroupKind.recurrence, txn.recurrence_group_id
    return None


def resolve_effective_scope(
    target: Transaction,
    requested: Optional[EditScope],
) -> EditScope:
    """Collapse a requested scope to the one that actually applies to ``target``.

    Rows outside any group always resolve to ``only``, whatever was requested.
    """
    if group_membership(target) is None:
        return EditScope.only
    if requested is None:
        raise ValidationError("A scope is required for grouped transactions")
    return EditScope(requested)


@dataclass(frozen=True)
class GroupSelector:
    kind: GroupKind
    group_id: str
    min_index: Optional[int] = None
    min_date: Optional[date] = None

    def clauses(self) -> list[ColumnElement[bool]]:
        if self.kind == GroupKind.installment:
            clauses = [Transaction.installment_group_id == self.group_id]
            if self.min_index is not None:
                clauses.append(Transaction.installment_index >= self.min_index)
        else:
            clauses = [Transaction.recurrence_group_id == self.group_id]
        if self.min_date is not None:
            clauses.append(Transaction.date >= self.min_date)
        return clauses


class GroupResolver:
    def __init__(self, store: TransactionStore) -> None:
        self.store = store

    def installment_rows(
        self, group_id: str, min_index: Optional[int] = None
    ) -> list[Transaction]:
        selector = GroupSelector(GroupKind.installment, group_id, min_index=min_index)
        return self.store.query(
            *selector.clauses(),
            order_by=(Transaction.installment_index, Transaction.id),
        )

    def recurrence_rows(self, group_id: str) -> list[Transaction]:
        selector = GroupSelector(GroupKind.recurrence, group_id)
        return self.store.query(
            *selector.clauses(), order_by=(Transaction.date, Transaction.id)
        )

    @staticmethod
    def occurrence_position(rows: list[Transaction], target: Transaction) -> int:
        for position, row in enumerate(rows):
            if row.id == target.id:
                return position
        return 0

    @staticmethod
    def rule_for(target: Transaction) -> RecurrenceRule:
        return RecurrenceRule.from_json(target.recurrence_rule)

    def delete_selector(
        self, target: Transaction, scope: EditScope
    ) -> Optional[GroupSelector]:
        """Rows removed by a grouped delete; ``None`` means the target row alone."""
        membership = group_membership(target)
        if membership is None or scope == EditScope.only:
            return None
        kind, group_id = membership
        if scope == EditScope.from_first:
            return GroupSelector(kind, group_id)
        if kind == GroupKind.installment:
            return GroupSelector(kind, group_id, min_index=target.installment_index)
        return GroupSelector(kind, group_id, min_date=target.date)
