import csv
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Iterable, Optional, Sequence

from models import AMOUNT_PRECISION, AMOUNT_SCALE, Transaction


EXPORT_HEADER = ["id", "categoryId", "typeId", "amount", "date", "description"]
IMPORT_HEADER = ["category", "type", "amount", "date", "description"]
REQUIRED_IMPORT_COLUMNS = ("category", "type", "amount")

TEMPLATE_EXAMPLE_ROWS = [
    ["Food", "EXPENSE", "200", "2025-01-01", "Lunch"],
    ["Salary", "INCOME", "5000", "2025-01-02", "Monthly salary"],
]


@dataclass(frozen=True)
class ImportRow:
    line: int
    category: str
    type: str
    amount: str
    date: str
    description: str


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_datetime(value: str) -> datetime:
    """Parse an ISO-8601 date/timestamp or a dd.mm.yyyy date into naive UTC."""
    value = value.strip()
    if not value:
        raise ValueError("Empty date")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = datetime.strptime(value, "%d.%m.%Y")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_amount(value: str) -> Decimal:
    clean = value.strip().replace("€", "").replace("$", "").replace("₽", "")
    clean = clean.replace(" ", "").replace("\u00a0", "").replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    _, digits, exponent = amount.normalize().as_tuple()
    if -exponent > AMOUNT_SCALE:
        raise ValueError(f"Amount has more than {AMOUNT_SCALE} decimal places")
    if len(digits) + exponent > AMOUNT_PRECISION - AMOUNT_SCALE:
        raise ValueError("Amount is too large")
    return amount


def format_amount(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return str(int(amount))
    return format(amount.normalize(), "f")


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _strip_leading_comments(content: str) -> tuple[str, int]:
    lines = content.splitlines(keepends=True)
    skipped = 0
    for line in lines:
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            break
        skipped += 1
    return "".join(lines[skipped:]), skipped


def parse_import_csv(content: str) -> tuple[list[ImportRow], list[str]]:
    """Split raw CSV text into rows keyed by the import header.

    Returns the rows and a list of structural errors; any error means the
    batch must not be imported. Row line numbers refer to the original text.
    Header names are case-sensitive.
    """
    body, offset = _strip_leading_comments(content)
    reader = csv.reader(StringIO(body), strict=True)
    errors: list[str] = []
    rows: list[ImportRow] = []
    header: Optional[list[str]] = None
    while True:
        try:
            record = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            # the reader drops the offending line and resumes on the next one
            errors.append(f"Row {reader.line_num + offset}: {exc}")
            continue
        line = reader.line_num + offset
        if not record or all(not cell.strip() for cell in record):
            continue
        if header is None:
            header = [cell.strip() for cell in record]
            missing = [c for c in REQUIRED_IMPORT_COLUMNS if c not in header]
            if missing:
                errors.append(
                    f"Row {line}: missing required columns: {', '.join(missing)}"
                )
                break
            continue
        if len(record) != len(header):
            errors.append(
                f"Row {line}: expected {len(header)} fields, found {len(record)}"
            )
            continue
        values = dict(zip(header, record))
        rows.append(
            ImportRow(
                line=line,
                category=(values.get("category") or "").strip(),
                type=(values.get("type") or "").strip().upper(),
                amount=(values.get("amount") or "").strip(),
                date=(values.get("date") or "").strip(),
                description=(values.get("description") or "").strip(),
            )
        )
    if header is None and not errors:
        errors.append("Missing header row")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.id,
                txn.category_id,
                txn.type_id,
                format_amount(txn.amount),
                format_timestamp(txn.date),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()


def import_template(type_slugs: Iterable[str]) -> str:
    output = StringIO()
    output.write(f'# Allowed values for "type": {", ".join(type_slugs)}\n')
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(IMPORT_HEADER)
    for row in TEMPLATE_EXAMPLE_ROWS:
        writer.writerow(row)
    return output.getvalue()
