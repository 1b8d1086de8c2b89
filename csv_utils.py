import csv
import re
from io import StringIO
from typing import Mapping, Sequence

from models import Transaction, TransactionType


TRANSFER_LABEL = "Transfer"


def sanitize_csv_value(value: str) -> str:
    """
    Prefix values that a spreadsheet would evaluate as a formula with a tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^http[s]?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def _account_label(txn: Transaction, accounts: Mapping[int, str]) -> str:
    if txn.type == TransactionType.transfer:
        source = sanitize_csv_value(accounts.get(txn.account_from_id or 0, ""))
        destination = sanitize_csv_value(accounts.get(txn.account_to_id or 0, ""))
        return f"{source} -> {destination}"
    return sanitize_csv_value(accounts.get(txn.account_id or 0, ""))


def export_transactions(
    transactions: Sequence[Transaction],
    accounts: Mapping[int, str],
    categories: Mapping[int, str],
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["date", "description", "category", "account", "amount", "type", "cleared", "note"]
    )
    for txn in transactions:
        if txn.type == TransactionType.transfer:
            category = TRANSFER_LABEL
        else:
            category = categories.get(txn.category_id or 0, "")
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description),
                sanitize_csv_value(category),
                _account_label(txn, accounts),
                format_amount(txn.amount_cents),
                txn.type.value,
                "true" if txn.cleared else "false",
                sanitize_csv_value(txn.note or ""),
            ]
        )
    return output.getvalue()
