import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Sequence, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from errors import StorageError
from models import Transaction


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ORDER = (Transaction.date, Transaction.created_at, Transaction.id)


class TransactionStore:
    """Persistence boundary for transaction rows.

    Filters are SQLAlchemy boolean clauses and are ANDed together with the owner
    filter. Every write commits on its own unless it runs inside ``atomic()``, in
    which case the whole block commits once or rolls back entirely.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self._atomic_depth = 0

    def _owned(self, clauses: Sequence[ColumnElement[bool]]) -> list:
        return [Transaction.user_id == self.user_id, *clauses]

    @contextmanager
    def atomic(self) -> Iterator["TransactionStore"]:
        self._atomic_depth += 1
        try:
            yield self
        except Exception:
            self._atomic_depth -= 1
            if self._atomic_depth == 0:
                self.session.rollback()
            raise
        self._atomic_depth -= 1
        if self._atomic_depth == 0:
            try:
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise StorageError(str(exc)) from exc

    def _write(self, op: str, action: Callable[[], T]) -> T:
        try:
            result = action()
            self.session.flush()
            if not self._atomic_depth:
                self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(f"storage_failure: op={op} reason={exc}")
            raise StorageError(str(exc)) from exc
        return result

    def query(
        self,
        *clauses: ColumnElement[bool],
        order_by: Optional[Sequence[Any]] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(*self._owned(clauses))
            .order_by(*(order_by if order_by is not None else DEFAULT_ORDER))
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(str(exc)) from exc

    def get(self, transaction_id: int) -> Optional[Transaction]:
        rows = self.query(Transaction.id == transaction_id)
        return rows[0] if rows else None

    def insert_many(self, rows: Sequence[dict[str, Any]]) -> list[Transaction]:
        def action() -> list[Transaction]:
            created = [Transaction(user_id=self.user_id, **row) for row in rows]
            self.session.add_all(created)
            return created

        if not rows:
            return []
        return self._write("insert_many", action)

    def update_by_id(self, transaction_id: int, patch: dict[str, Any]) -> Transaction:
        txn = self.get(transaction_id)
        if txn is None:
            raise StorageError(f"Transaction {transaction_id} not found")

        def action() -> Transaction:
            for key, value in patch.items():
                setattr(txn, key, value)
            return txn

        return self._write("update_by_id", action)

    def update_by_filter(
        self, *clauses: ColumnElement[bool], patch: dict[str, Any]
    ) -> list[Transaction]:
        rows = self.query(*clauses)

        def action() -> list[Transaction]:
            for txn in rows:
                for key, value in patch.items():
                    setattr(txn, key, value)
            return rows

        return self._write("update_by_filter", action)

    def delete_by_filter(self, *clauses: ColumnElement[bool]) -> int:
        def action() -> int:
            result = self.session.execute(
                delete(Transaction)
                .where(*self._owned(clauses))
                .execution_options(synchronize_session="fetch")
            )
            return int(result.rowcount or 0)

        return self._write("delete_by_filter", action)
