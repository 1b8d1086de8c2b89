import datetime as dt
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import CategoryKind, EditScope, IntervalUnit, TransactionType
from recurrence import InstallmentPlan, RecurrenceRule


ROW_FIELDS = {
    "date",
    "description",
    "note",
    "type",
    "amount_cents",
    "account_id",
    "account_from_id",
    "account_to_id",
    "category_id",
    "cleared",
}


class TransactionIn(BaseModel):
    date: dt.date
    description: str = Field(..., min_length=2, max_length=200)
    note: Optional[str] = Field(default=None, max_length=2000)
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    account_id: Optional[int] = None
    account_from_id: Optional[int] = None
    account_to_id: Optional[int] = None
    category_id: Optional[int] = None
    cleared: bool = False

    @model_validator(mode="after")
    def _normalize_account_shape(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            if not self.account_from_id or not self.account_to_id:
                raise ValueError("Transfers need both a source and a destination account")
            self.account_id = None
            self.category_id = None
        else:
            if not self.account_id:
                raise ValueError("Select an account")
            if not self.category_id:
                raise ValueError("Select a category")
            self.account_from_id = None
            self.account_to_id = None
        if self.note is not None and not self.note.strip():
            self.note = None
        return self

    def row_fields(self) -> dict[str, Any]:
        return self.model_dump(include=ROW_FIELDS)


class NoRepeatIn(BaseModel):
    mode: Literal["none"] = "none"

    def to_spec(self) -> None:
        return None


class InstallmentIn(BaseModel):
    mode: Literal["installment"] = "installment"
    start_index: int = Field(default=1, ge=1)
    total: int = Field(..., ge=1)

    def to_spec(self) -> InstallmentPlan:
        return InstallmentPlan(total=self.total, start_index=self.start_index)


class RecurrenceIn(BaseModel):
    mode: Literal["advanced"] = "advanced"
    interval: int = Field(default=1, ge=1)
    unit: IntervalUnit = IntervalUnit.month
    occurrences: Optional[int] = None
    indefinite: bool = False

    def to_spec(self) -> RecurrenceRule:
        return RecurrenceRule.build(
            self.interval,
            self.unit,
            indefinite=self.indefinite,
            occurrences=self.occurrences,
        )


RepeatIn = Annotated[
    Union[NoRepeatIn, InstallmentIn, RecurrenceIn], Field(discriminator="mode")
]


class TransactionCreateIn(TransactionIn):
    repeat: RepeatIn = Field(default_factory=NoRepeatIn)


class TransactionEditIn(TransactionIn):
    repeat: Optional[RepeatIn] = None
    scope: Optional[EditScope] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: dt.date
    description: str
    note: Optional[str]
    type: TransactionType
    amount_cents: int
    account_id: Optional[int]
    account_from_id: Optional[int]
    account_to_id: Optional[int]
    category_id: Optional[int]
    cleared: bool
    installment_group_id: Optional[str]
    installment_index: Optional[int]
    installment_total: Optional[int]
    recurrence_group_id: Optional[str]
    recurrence_rule: Optional[dict[str, Any]]


class IdsIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class ClearedIn(IdsIn):
    cleared: bool


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    initial_balance_cents: int = 0
    include_in_monthly_summary: bool = True


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    initial_balance_cents: int
    archived: bool
    include_in_monthly_summary: bool


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[int] = None
    allowed_type: CategoryKind = CategoryKind.expense


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    parent_id: Optional[int]
    allowed_type: CategoryKind


class CategoryNode(CategoryOut):
    children: list["CategoryNode"] = Field(default_factory=list)


class AccountBalance(BaseModel):
    account_id: int
    name: str
    balance_cents: int


class MonthSummary(BaseModel):
    month: str
    balances: list[AccountBalance]
    summary_total_cents: int
