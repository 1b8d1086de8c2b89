"""accounts, categories and grouped transactions

Revision ID: 202406011200
Revises:
Create Date: 2024-06-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202406011200"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "include_in_monthly_summary",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "allowed_type",
            sa.Enum("expense", "income", "both", name="categorykind"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column(
            "type",
            sa.Enum("expense", "income", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("account_from_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("account_to_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("cleared", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("installment_group_id", sa.String(length=36)),
        sa.Column("installment_index", sa.Integer()),
        sa.Column("installment_total", sa.Integer()),
        sa.Column("recurrence_group_id", sa.String(length=36)),
        sa.Column("recurrence_rule", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "installment_group_id IS NULL OR recurrence_group_id IS NULL",
            name="ck_transactions_single_group",
        ),
        sa.CheckConstraint(
            "(installment_group_id IS NULL AND installment_index IS NULL"
            " AND installment_total IS NULL)"
            " OR (installment_group_id IS NOT NULL AND installment_index >= 1"
            " AND installment_total >= installment_index)",
            name="ck_transactions_installment_fields",
        ),
        sa.CheckConstraint(
            "recurrence_group_id IS NULL OR recurrence_rule IS NOT NULL",
            name="ck_transactions_recurrence_rule",
        ),
        sa.CheckConstraint(
            "(type = 'transfer' AND account_id IS NULL AND category_id IS NULL"
            " AND account_from_id IS NOT NULL AND account_to_id IS NOT NULL)"
            " OR (type != 'transfer' AND account_from_id IS NULL"
            " AND account_to_id IS NULL)",
            name="ck_transactions_account_shape",
        ),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "date"]
    )
    op.create_index(
        "ix_transactions_installment_group", "transactions", ["installment_group_id"]
    )
    op.create_index(
        "ix_transactions_recurrence_group", "transactions", ["recurrence_group_id"]
    )


def downgrade():
    op.drop_index("ix_transactions_recurrence_group", table_name="transactions")
    op.drop_index("ix_transactions_installment_group", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
