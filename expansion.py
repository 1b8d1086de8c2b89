import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from errors import ValidationError
from groups import GroupResolver, GroupSelector, group_membership, resolve_effective_scope
from models import EditScope, GroupKind, Transaction
from recurrence import (
    InstallmentPlan,
    RecurrenceRule,
    installment_date,
    installment_first_date,
    shift_by_unit,
    shift_months,
)
from schemas import TransactionIn
from storage import TransactionStore


logger = logging.getLogger(__name__)

RepeatSpec = Union[None, InstallmentPlan, RecurrenceRule]

GROUP_FIELDS_CLEARED: dict[str, Any] = {
    "installment_group_id": None,
    "installment_index": None,
    "installment_total": None,
    "recurrence_group_id": None,
    "recurrence_rule": None,
}


class IdAllocator(Protocol):
    def new_group_id(self) -> str: ...


class UuidAllocator:
    def new_group_id(self) -> str:
        return str(uuid.uuid4())


@dataclass
class RowUpdate:
    transaction_id: int
    patch: dict[str, Any]


@dataclass
class MutationPlan:
    """Writes for one logical operation, applied in order: updates, deletes, inserts."""

    group_kind: Optional[GroupKind] = None
    group_id: Optional[str] = None
    updates: list[RowUpdate] = field(default_factory=list)
    delete_ids: list[int] = field(default_factory=list)
    delete_selector: Optional[GroupSelector] = None
    inserts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.updates or self.delete_ids or self.delete_selector or self.inserts
        )

    def describe(self) -> str:
        selector = "none"
        if self.delete_selector is not None:
            s = self.delete_selector
            selector = f"{s.kind.value}:{s.group_id}"
            if s.min_index is not None:
                selector += f":index>={s.min_index}"
            if s.min_date is not None:
                selector += f":date>={s.min_date.isoformat()}"
        return (
            f"updates={len(self.updates)} delete_ids={len(self.delete_ids)} "
            f"delete_selector={selector} inserts={len(self.inserts)}"
        )


@dataclass
class ExecutionResult:
    rows: list[Transaction]
    deleted: int


class ExpansionEngine:
    """Turns one transaction payload into concrete rows and group mutation plans.

    Reads go through the resolver while planning; nothing is written here. The
    plans are handed to ``PlanExecutor``.
    """

    def __init__(
        self, resolver: GroupResolver, allocator: Optional[IdAllocator] = None
    ) -> None:
        self.resolver = resolver
        self.allocator = allocator or UuidAllocator()

    def expand(self, data: TransactionIn, repeat: RepeatSpec) -> list[dict[str, Any]]:
        base = {**data.row_fields(), **GROUP_FIELDS_CLEARED}
        if repeat is None:
            return [base]

        if isinstance(repeat, InstallmentPlan):
            group_id = self.allocator.new_group_id()
            return [
                {
                    **base,
                    "date": shift_months(data.date, index - repeat.start_index),
                    "installment_group_id": group_id,
                    "installment_index": index,
                    "installment_total": repeat.total,
                }
                for index in repeat.indices
            ]

        if isinstance(repeat, RecurrenceRule):
            group_id = self.allocator.new_group_id()
            snapshot = repeat.to_json()
            return [
                {
                    **base,
                    "date": occurrence,
                    "recurrence_group_id": group_id,
                    "recurrence_rule": dict(snapshot),
                }
                for occurrence in repeat.dates_from(data.date)
            ]

        raise ValidationError(f"Unsupported repeat specification: {repeat!r}")

    def plan_edit(
        self,
        target: Transaction,
        data: TransactionIn,
        repeat: RepeatSpec,
        scope: Optional[EditScope],
    ) -> MutationPlan:
        membership = group_membership(target)
        if membership is None:
            if isinstance(repeat, RecurrenceRule):
                plan = self._plan_promotion(target, data, repeat)
            elif isinstance(repeat, InstallmentPlan):
                raise ValidationError(
                    "An existing transaction cannot be split into installments"
                )
            else:
                plan = self._plan_single(target, data)
            logger.info(
                f"plan_edit: target={target.id} group=none {plan.describe()}"
            )
            return plan

        kind, group_id = membership
        if kind == GroupKind.installment and isinstance(repeat, RecurrenceRule):
            raise ValidationError("Installments cannot be converted into a recurrence")
        if kind == GroupKind.recurrence and isinstance(repeat, InstallmentPlan):
            raise ValidationError("A recurrence cannot be converted into installments")

        effective = resolve_effective_scope(target, scope)
        if effective == EditScope.only:
            plan = self._plan_single(target, data)
        elif kind == GroupKind.installment:
            plan = self._plan_installment_edit(target, data, repeat, effective)
        else:
            plan = self._plan_recurrence_edit(target, data, repeat, effective)
        logger.info(
            f"plan_edit: target={target.id} group={kind.value}:{group_id} "
            f"scope={effective.value} {plan.describe()}"
        )
        return plan

    def plan_delete(
        self, target: Transaction, scope: Optional[EditScope]
    ) -> MutationPlan:
        effective = resolve_effective_scope(target, scope or EditScope.only)
        selector = self.resolver.delete_selector(target, effective)
        membership = group_membership(target)
        plan = MutationPlan(
            group_kind=membership[0] if membership else None,
            group_id=membership[1] if membership else None,
        )
        if selector is None:
            plan.delete_ids.append(target.id)
        else:
            plan.delete_selector = selector
        logger.info(
            f"plan_delete: target={target.id} scope={effective.value} {plan.describe()}"
        )
        return plan

    def _plan_single(self, target: Transaction, data: TransactionIn) -> MutationPlan:
        # Group fields stay as they are so the row keeps its place in the group.
        membership = group_membership(target)
        return MutationPlan(
            group_kind=membership[0] if membership else None,
            group_id=membership[1] if membership else None,
            updates=[RowUpdate(target.id, data.row_fields())],
        )

    def _plan_promotion(
        self, target: Transaction, data: TransactionIn, rule: RecurrenceRule
    ) -> MutationPlan:
        group_id = self.allocator.new_group_id()
        snapshot = rule.to_json()
        fields = data.row_fields()
        dates = rule.dates_from(data.date)
        plan = MutationPlan(group_kind=GroupKind.recurrence, group_id=group_id)
        plan.updates.append(
            RowUpdate(
                target.id,
                {
                    **fields,
                    **GROUP_FIELDS_CLEARED,
                    "recurrence_group_id": group_id,
                    "recurrence_rule": dict(snapshot),
                },
            )
        )
        # The first date belongs to the target row itself.
        for occurrence in dates[1:]:
            plan.inserts.append(
                {
                    **fields,
                    **GROUP_FIELDS_CLEARED,
                    "date": occurrence,
                    "recurrence_group_id": group_id,
                    "recurrence_rule": dict(snapshot),
                }
            )
        return plan

    def _plan_installment_edit(
        self,
        target: Transaction,
        data: TransactionIn,
        repeat: Optional[InstallmentPlan],
        scope: EditScope,
    ) -> MutationPlan:
        group_id = target.installment_group_id
        current_index = target.installment_index or 1
        requested_total = (
            repeat.total if repeat is not None else (target.installment_total or 1)
        )
        if scope == EditScope.from_here:
            new_total = max(requested_total, current_index)
            target_indices = range(current_index, new_total + 1)
            min_index: Optional[int] = current_index
        else:
            new_total = max(1, requested_total)
            target_indices = range(1, new_total + 1)
            min_index = None

        first_date = installment_first_date(data.date, current_index)
        rows = self.resolver.installment_rows(group_id, min_index=min_index)
        fields = data.row_fields()

        plan = MutationPlan(group_kind=GroupKind.installment, group_id=group_id)
        existing: set[int] = set()
        for row in rows:
            row_index = row.installment_index or 0
            existing.add(row_index)
            if row_index in target_indices:
                plan.updates.append(
                    RowUpdate(
                        row.id,
                        {
                            **fields,
                            "date": installment_date(first_date, row_index),
                            "installment_total": new_total,
                        },
                    )
                )
            elif row_index > new_total:
                plan.delete_ids.append(row.id)

        for index in target_indices:
            if index in existing:
                continue
            plan.inserts.append(
                {
                    **fields,
                    **GROUP_FIELDS_CLEARED,
                    "date": installment_date(first_date, index),
                    "installment_group_id": group_id,
                    "installment_index": index,
                    "installment_total": new_total,
                }
            )
        return plan

    def _plan_recurrence_edit(
        self,
        target: Transaction,
        data: TransactionIn,
        repeat: Optional[RecurrenceRule],
        scope: EditScope,
    ) -> MutationPlan:
        group_id = target.recurrence_group_id
        rule = repeat if repeat is not None else self.resolver.rule_for(target)
        rows = self.resolver.recurrence_rows(group_id)
        position = self.resolver.occurrence_position(rows, target)

        if scope == EditScope.from_first:
            start = shift_by_unit(data.date, -position * rule.interval, rule.unit)
            selector = GroupSelector(GroupKind.recurrence, group_id)
        else:
            start = data.date
            selector = GroupSelector(
                GroupKind.recurrence, group_id, min_date=target.date
            )

        snapshot = rule.to_json()
        fields = data.row_fields()
        plan = MutationPlan(
            group_kind=GroupKind.recurrence,
            group_id=group_id,
            delete_selector=selector,
        )
        for occurrence in rule.dates_from(start):
            plan.inserts.append(
                {
                    **fields,
                    **GROUP_FIELDS_CLEARED,
                    "date": occurrence,
                    "recurrence_group_id": group_id,
                    "recurrence_rule": dict(snapshot),
                }
            )
        return plan


class PlanExecutor:
    """Applies a ``MutationPlan`` through the store.

    By default each step commits on its own, so a failure part way through leaves
    the earlier steps in place. With ``atomic=True`` the whole plan commits once.
    """

    def __init__(self, store: TransactionStore, *, atomic: bool = False) -> None:
        self.store = store
        self.atomic = atomic

    def execute(self, plan: MutationPlan) -> ExecutionResult:
        if self.atomic:
            with self.store.atomic():
                return self._run(plan)
        return self._run(plan)

    def _run(self, plan: MutationPlan) -> ExecutionResult:
        rows: list[Transaction] = []
        deleted = 0
        for update in plan.updates:
            rows.append(self.store.update_by_id(update.transaction_id, update.patch))
        if plan.delete_ids:
            deleted += self.store.delete_by_filter(
                Transaction.id.in_(plan.delete_ids)
            )
        if plan.delete_selector is not None:
            deleted += self.store.delete_by_filter(*plan.delete_selector.clauses())
        if plan.inserts:
            rows.extend(self.store.insert_many(plan.inserts))
        logger.info(
            f"plan_executed: atomic={self.atomic} updated={len(plan.updates)} "
            f"deleted={deleted} inserted={len(plan.inserts)}"
        )
        return ExecutionResult(rows=rows, deleted=deleted)
