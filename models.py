from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class CategoryKind(str, Enum):
    expense = "expense"
    income = "income"
    both = "both"


class IntervalUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"


class EditScope(str, Enum):
    only = "only"
    from_here = "from_here"
    from_first = "from_first"


class GroupKind(str, Enum):
    installment = "installment"
    recurrence = "recurrence"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    include_in_monthly_summary: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    allowed_type: Mapped[CategoryKind] = mapped_column(
        SAEnum(CategoryKind), nullable=False, default=CategoryKind.expense
    )

    def accepts(self, txn_type: TransactionType) -> bool:
        if txn_type == TransactionType.transfer:
            return False
        return self.allowed_type in (CategoryKind.both, CategoryKind(txn_type.value))


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    account_from_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    account_to_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    cleared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    installment_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    installment_index: Mapped[Optional[int]] = mapped_column(Integer)
    installment_total: Mapped[Optional[int]] = mapped_column(Integer)
    recurrence_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    recurrence_rule: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True)
    )

    account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[account_id]
    )
    account_from: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[account_from_id]
    )
    account_to: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[account_to_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_installment_group", "installment_group_id"),
        Index("ix_transactions_recurrence_group", "recurrence_group_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "installment_group_id IS NULL OR recurrence_group_id IS NULL",
            name="ck_transactions_single_group",
        ),
        CheckConstraint(
            "(installment_group_id IS NULL AND installment_index IS NULL"
            " AND installment_total IS NULL)"
            " OR (installment_group_id IS NOT NULL AND installment_index >= 1"
            " AND installment_total >= installment_index)",
            name="ck_transactions_installment_fields",
        ),
        CheckConstraint(
            "recurrence_group_id IS NULL OR recurrence_rule IS NOT NULL",
            name="ck_transactions_recurrence_rule",
        ),
        CheckConstraint(
            "(type = 'transfer' AND account_id IS NULL AND category_id IS NULL"
            " AND account_from_id IS NOT NULL AND account_to_id IS NOT NULL)"
            " OR (type != 'transfer' AND account_from_id IS NULL"
            " AND account_to_id IS NULL)",
            name="ck_transactions_account_shape",
        ),
    )

    @property
    def is_grouped(self) -> bool:
        return bool(self.installment_group_id or self.recurrence_group_id)
