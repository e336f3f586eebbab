from __future__ import annotations

import csv
import io
import logging
import re
import zipfile
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import BaseModel

from backend.finance_engine import Transaction, TransactionType

logger = logging.getLogger(__name__)

DATE_COLUMN = "Date"
ACCOUNT_COLUMN = "Compte"
CATEGORY_COLUMN = "Catégorie"
SUBCATEGORY_COLUMN = "Sous-catégories"
NOTE_COLUMN = "Note"
AMOUNT_COLUMN = "MAD"
TYPE_COLUMN = "Revenu/dépense"

REQUIRED_COLUMNS = [DATE_COLUMN, ACCOUNT_COLUMN, CATEGORY_COLUMN, AMOUNT_COLUMN, TYPE_COLUMN]
DESCRIPTION_COLUMNS = [CATEGORY_COLUMN, SUBCATEGORY_COLUMN, NOTE_COLUMN]
DESCRIPTION_SEPARATOR = " - "
DEFAULT_DESCRIPTION = "Non décrit"

BUDGET_CATEGORY_HINT = "catégorie"
BUDGET_AMOUNT_HINT = "budget"

SUPPORTED_EXTENSIONS = (".xlsx", ".csv")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d/%m/%y", "%d-%m-%Y", "%Y/%m/%d", "%d.%m.%Y")

Row = dict[str, object]


class ParsedTransaction(BaseModel):
    date: date
    description: str
    amount: Decimal
    type: TransactionType
    account: str

    def to_transaction(self) -> Transaction:
        return Transaction(
            date=self.date,
            description=self.description,
            amount=self.amount,
            type=self.type,
            account=self.account,
        )


class TransactionParseResult(BaseModel):
    rows: list[ParsedTransaction]

    def to_transactions(self) -> list[Transaction]:
        return [row.to_transaction() for row in self.rows]


class BudgetParseResult(BaseModel):
    budget: dict[str, Decimal]


def parse_transactions_file(contents: bytes, filename: str) -> TransactionParseResult:
    header, rows = read_table(contents, filename)
    if not rows:
        raise ValueError("Transaction file is empty.")

    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise ValueError(f"Missing columns: {', '.join(missing)}")

    parsed = [parse_transaction_row(row, line) for line, row in rows if not is_blank_row(row)]
    logger.info("Parsed %d transactions from %s", len(parsed), filename)
    return TransactionParseResult(rows=parsed)


def parse_budget_file(contents: bytes, filename: str) -> BudgetParseResult:
    header, rows = read_table(contents, filename)
    if not rows:
        raise ValueError("Budget file is empty.")

    category_header = find_header(header, BUDGET_CATEGORY_HINT)
    amount_header = find_header(header, BUDGET_AMOUNT_HINT)
    if not category_header or not amount_header:
        raise ValueError("Budget file must contain 'Catégorie' and 'Budget' columns.")

    budget: dict[str, Decimal] = {}
    for _, row in rows:
        category = clean_text(row.get(category_header))
        amount = parse_decimal(row.get(amount_header))
        if category and amount is not None:
            budget[category] = amount

    logger.info("Parsed %d budget categories from %s", len(budget), filename)
    return BudgetParseResult(budget=budget)


def parse_transaction_row(row: Row, line: int) -> ParsedTransaction:
    if any(is_empty(row.get(column)) for column in REQUIRED_COLUMNS):
        raise ValueError(f"Line {line} is invalid: missing data.")

    date_value = parse_date(row.get(DATE_COLUMN))
    if date_value is None:
        raise ValueError(f"Invalid date on line {line}.")

    amount = parse_decimal(row.get(AMOUNT_COLUMN))
    if amount is None:
        raise ValueError(f"Invalid amount on line {line}.")

    parts = [clean_text(row.get(column)) for column in DESCRIPTION_COLUMNS]
    description = DESCRIPTION_SEPARATOR.join(part for part in parts if part)

    return ParsedTransaction(
        date=date_value,
        description=description or DEFAULT_DESCRIPTION,
        amount=abs(amount),
        type=parse_transaction_type(row.get(TYPE_COLUMN)),
        account=clean_text(row.get(ACCOUNT_COLUMN)),
    )


def parse_transaction_type(value: object) -> TransactionType:
    raw_type = clean_text(value)
    if raw_type == TransactionType.REVENUE.value:
        return TransactionType.REVENUE
    if raw_type == TransactionType.OUTFLOW.value:
        return TransactionType.OUTFLOW
    return TransactionType.EXPENSE


def read_table(contents: bytes, filename: str) -> tuple[list[str], list[tuple[int, Row]]]:
    """Return the header and the data rows keyed by header, with their sheet line numbers."""
    extension = file_extension(filename)
    if extension == ".xlsx":
        raw_rows = read_xlsx_rows(contents)
    elif extension == ".csv":
        raw_rows = read_csv_rows(contents)
    else:
        raise ValueError(f"Unsupported file type. Expected one of: {', '.join(SUPPORTED_EXTENSIONS)}")

    if not raw_rows:
        return [], []

    header = [clean_text(value) for value in raw_rows[0]]
    rows = [
        (line, row_to_dict(header, values))
        for line, values in enumerate(raw_rows[1:], start=2)
    ]
    return header, rows


def read_xlsx_rows(contents: bytes) -> list[list[object]]:
    try:
        workbook = load_workbook(io.BytesIO(contents), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
        raise ValueError("Unable to read the spreadsheet.") from exc
    try:
        worksheet = workbook.worksheets[0]
        return [list(values) for values in worksheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def read_csv_rows(contents: bytes) -> list[list[object]]:
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValueError("CSV must be UTF-8 encoded.") from exc
    return [list(values) for values in csv.reader(io.StringIO(decoded))]


def row_to_dict(header: list[str], values: list[object]) -> Row:
    if len(values) < len(header):
        values = values + [None] * (len(header) - len(values))
    return {name: value for name, value in zip(header, values) if name}


def find_header(header: list[str], hint: str) -> str | None:
    for name in header:
        if hint in name.lower():
            return name
    return None


def parse_date(value: object) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        return None


def parse_decimal(value: object) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
        return amount if amount.is_finite() else None

    cleaned = clean_text(value)
    if not cleaned:
        return None
    cleaned = re.sub(r"[^\d,.\-+]", "", cleaned)
    if cleaned.rfind(",") > cleaned.rfind("."):
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def file_extension(filename: str) -> str:
    name = filename.strip().lower()
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def clean_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def is_empty(value: object) -> bool:
    return value is None or clean_text(value) == ""


def is_blank_row(row: Row) -> bool:
    return all(is_empty(value) for value in row.values())
