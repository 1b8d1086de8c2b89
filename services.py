from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_transactions
from errors import StorageError
from expansion import ExpansionEngine, IdAllocator, MutationPlan, PlanExecutor
from groups import GroupResolver, GroupSelector
from models import (
    Account,
    Category,
    EditScope,
    Transaction,
    TransactionType,
)
from periods import Period, month_period
from schemas import (
    AccountBalance,
    AccountIn,
    CategoryIn,
    CategoryNode,
    MonthSummary,
    TransactionCreateIn,
    TransactionEditIn,
    TransactionIn,
)
from storage import TransactionStore


logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


@dataclass
class TransactionFilters:
    period: Optional[Period] = None
    account_ids: list[int] = field(default_factory=list)
    category_ids: list[int] = field(default_factory=list)
    search: Optional[str] = None
    uncleared_only: bool = False


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Account]:
        stmt = select(Account).where(Account.user_id == self.user_id)
        if not include_archived:
            stmt = stmt.where(Account.archived.is_(False))
        stmt = stmt.order_by(Account.created_at, Account.id)
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            initial_balance_cents=data.initial_balance_cents,
            include_in_monthly_summary=data.include_in_monthly_summary,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        account.name = data.name.strip()
        account.initial_balance_cents = data.initial_balance_cents
        account.include_in_monthly_summary = data.include_in_monthly_summary
        self.session.commit()
        self.session.refresh(account)
        return account

    def archive(self, account_id: int) -> None:
        account = self.get(account_id)
        account.archived = True
        self.session.commit()

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.account_id == account_id,
                    Transaction.account_from_id == account_id,
                    Transaction.account_to_id == account_id,
                ),
            )
        )
        if in_use:
            raise ValueError("Account has transactions; archive it instead")
        self.session.delete(account)
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.created_at, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        if data.parent_id is not None:
            self.get(data.parent_id)
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            parent_id=data.parent_id,
            allowed_type=data.allowed_type,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        if data.parent_id is not None:
            self.get(data.parent_id)
            if data.parent_id in self.expand_selection([category_id]):
                raise ValueError("A category cannot be nested under itself")
        category.name = data.name.strip()
        category.parent_id = data.parent_id
        category.allowed_type = data.allowed_type
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category_id,
            )
        )
        if in_use:
            raise ValueError("Category is used by transactions")
        for child in self.session.scalars(
            select(Category).where(Category.parent_id == category_id)
        ):
            child.parent_id = category.parent_id
        self.session.delete(category)
        self.session.commit()

    def tree(self) -> list[CategoryNode]:
        categories = self.list_all()
        nodes = {c.id: CategoryNode.model_validate(c) for c in categories}
        roots: list[CategoryNode] = []
        for category in categories:
            node = nodes[category.id]
            if category.parent_id is not None and category.parent_id in nodes:
                nodes[category.parent_id].children.append(node)
            else:
                roots.append(node)
        return roots

    def expand_selection(self, category_ids: Iterable[int]) -> set[int]:
        children: dict[int, list[int]] = {}
        for category in self.list_all():
            if category.parent_id is not None:
                children.setdefault(category.parent_id, []).append(category.id)

        expanded: set[int] = set()
        pending = list(category_ids)
        while pending:
            current = pending.pop()
            if current in expanded:
                continue
            expanded.add(current)
            pending.extend(children.get(current, []))
        return expanded


class MetricsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self._month_summary_cache: dict[str, MonthSummary] = {}

    def _invalidate_period_cache(self, period: Period) -> None:
        self._month_summary_cache.pop(period.slug, None)

    def invalidate_dates(self, dates: Iterable[date]) -> None:
        for value in dates:
            self._invalidate_period_cache(month_period(value))

    def month_summary(self, period: Period) -> MonthSummary:
        cached = self._month_summary_cache.get(period.slug)
        if cached is not None:
            return cached

        accounts = AccountService(self.session, self.user_id).list_all()
        balances = {a.id: a.initial_balance_cents for a in accounts}
        transactions = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
        ).all()
        for txn in transactions:
            if txn.type == TransactionType.transfer:
                if txn.account_from_id in balances:
                    balances[txn.account_from_id] -= txn.amount_cents
                if txn.account_to_id in balances:
                    balances[txn.account_to_id] += txn.amount_cents
            elif txn.account_id in balances:
                sign = -1 if txn.type == TransactionType.expense else 1
                balances[txn.account_id] += sign * txn.amount_cents

        summary = MonthSummary(
            month=period.slug,
            balances=[
                AccountBalance(
                    account_id=a.id, name=a.name, balance_cents=balances[a.id]
                )
                for a in accounts
            ],
            summary_total_cents=sum(
                balances[a.id] for a in accounts if a.include_in_monthly_summary
            ),
        )
        self._month_summary_cache[period.slug] = summary
        return summary


class TransactionService:
    """Entry point for creating, editing and deleting transactions.

    Reference checks happen here; row expansion and group planning are delegated
    to ``ExpansionEngine`` and the resulting plans run through ``PlanExecutor``.
    Edits and deletes always return freshly queried rows.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        allocator: Optional[IdAllocator] = None,
        atomic: Optional[bool] = None,
        store: Optional[TransactionStore] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.store = store or TransactionStore(session, self.user_id)
        self.resolver = GroupResolver(self.store)
        self.engine = ExpansionEngine(self.resolver, allocator)
        if atomic is None:
            atomic = get_settings().atomic_group_mutations
        self.executor = PlanExecutor(self.store, atomic=atomic)
        self.metrics = MetricsService(session, self.user_id)

    def _validate_references(self, data: TransactionIn) -> None:
        accounts = AccountService(self.session, self.user_id)
        if data.type == TransactionType.transfer:
            accounts.get(data.account_from_id)
            accounts.get(data.account_to_id)
            if data.account_from_id == data.account_to_id:
                raise ValueError("Transfer accounts must be different")
            return
        accounts.get(data.account_id)
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if not category.accepts(data.type):
            raise ValueError("Category type mismatch")

    def get(self, transaction_id: int) -> Transaction:
        txn = self.store.get(transaction_id)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list(self, filters: TransactionFilters) -> list[Transaction]:
        clauses = []
        if filters.period is not None:
            clauses.append(
                Transaction.date.between(filters.period.start, filters.period.end)
            )
        if filters.uncleared_only:
            clauses.append(Transaction.cleared.is_(False))
        if filters.search and filters.search.strip():
            term = f"%{filters.search.strip()}%"
            clauses.append(
                or_(Transaction.description.ilike(term), Transaction.note.ilike(term))
            )
        if filters.account_ids:
            clauses.append(
                or_(
                    Transaction.account_id.in_(filters.account_ids),
                    Transaction.account_from_id.in_(filters.account_ids),
                    Transaction.account_to_id.in_(filters.account_ids),
                )
            )
        if filters.category_ids:
            expanded = CategoryService(self.session, self.user_id).expand_selection(
                filters.category_ids
            )
            clauses.append(Transaction.category_id.in_(expanded))
        return self.store.query(*clauses)

    def create(self, data: TransactionCreateIn) -> list[Transaction]:
        repeat = data.repeat.to_spec()
        self._validate_references(data)
        rows = self.engine.expand(data, repeat)
        created = self.store.insert_many(rows)
        self.metrics.invalidate_dates(row["date"] for row in rows)
        logger.info(
            f"transaction_create: mode={data.repeat.mode} rows={len(created)}"
        )
        return created

    def update(self, transaction_id: int, data: TransactionEditIn) -> list[Transaction]:
        target = self.get(transaction_id)
        original_date = target.date
        repeat = data.repeat.to_spec() if data.repeat is not None else None
        self._validate_references(data)
        plan = self.engine.plan_edit(target, data, repeat, data.scope)
        self._execute(plan, extra_dates=[original_date, data.date])
        if plan.group_id is None:
            return [self.get(transaction_id)]
        return self.group_rows(plan)

    def delete(self, transaction_id: int, scope: Optional[EditScope] = None) -> int:
        target = self.get(transaction_id)
        plan = self.engine.plan_delete(target, scope)
        return self._execute(plan, extra_dates=[target.date])

    def delete_many(self, transaction_ids: list[int]) -> int:
        rows = self.store.query(Transaction.id.in_(transaction_ids))
        deleted = self.store.delete_by_filter(Transaction.id.in_(transaction_ids))
        self.metrics.invalidate_dates(row.date for row in rows)
        logger.info(
            f"transaction_delete_many: requested={len(transaction_ids)} deleted={deleted}"
        )
        return deleted

    def set_cleared(self, transaction_ids: list[int], cleared: bool) -> list[Transaction]:
        return self.store.update_by_filter(
            Transaction.id.in_(transaction_ids), patch={"cleared": cleared}
        )

    def group_rows(self, plan: MutationPlan) -> list[Transaction]:
        if plan.group_kind is None or plan.group_id is None:
            return []
        selector = GroupSelector(plan.group_kind, plan.group_id)
        return self.store.query(*selector.clauses())

    def _execute(self, plan: MutationPlan, extra_dates: Iterable[date]) -> int:
        dates = set(extra_dates)
        dates.update(row["date"] for row in plan.inserts)
        dates.update(u.patch["date"] for u in plan.updates if "date" in u.patch)
        try:
            result = self.executor.execute(plan)
        except StorageError:
            logger.exception(
                f"plan_failed: group={plan.group_id} atomic={self.executor.atomic}"
            )
            raise
        finally:
            # earlier steps may be committed even when a later one failed
            self.metrics.invalidate_dates(dates)
        return result.deleted


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def export(self, transactions: list[Transaction]) -> str:
        accounts = {
            a.id: a.name
            for a in AccountService(self.session, self.user_id).list_all(
                include_archived=True
            )
        }
        categories = {
            c.id: c.name for c in CategoryService(self.session, self.user_id).list_all()
        }
        return export_transactions(transactions, accounts, categories)
