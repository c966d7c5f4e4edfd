from __future__ import annotations

import csv
import io
import logging
import unicodedata
from datetime import date, datetime
from typing import Any

from openpyxl import load_workbook

from loan_tracker.services.errors import ValidationError


LOGGER = logging.getLogger("loan_tracker.import")

NAME_HEADERS = {"jmeno", "name", "full name", "fullname"}
BIRTH_HEADERS = {"datum narozeni", "date_of_birth", "date of birth", "dateofbirth", "dob", "birth date"}
_XLSX_MAGIC = b"PK\x03\x04"


def _normalize_header(raw: Any) -> str:
    text = unicodedata.normalize("NFKD", str(raw or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.strip().lower().split())


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def _normalize_birth_date(raw: str) -> str:
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%d. %m. %Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(raw.split("T", 1)[0], fmt).date().isoformat()
        except ValueError:
            continue
    return raw


def _read_xlsx_rows(data: bytes) -> list[list[Any]]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise ValidationError(f"Could not read spreadsheet: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_csv_rows(data: bytes) -> list[list[Any]]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("cp1250")
    sample = text[:2048]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    return [row for row in csv.reader(io.StringIO(text), dialect)]


def parse_people_sheet(data: bytes, filename: str | None = None) -> list[dict[str, str]]:
    """Read a roster spreadsheet into ``{"name", "dateOfBirth"}`` records.

    The first row is the header. Czech and English header names are both
    recognised; rows without a name or a date of birth are dropped.
    """
    if not data:
        raise ValidationError("Spreadsheet is empty.")
    is_xlsx = data.startswith(_XLSX_MAGIC) or (filename or "").lower().endswith((".xlsx", ".xlsm"))
    rows = _read_xlsx_rows(data) if is_xlsx else _read_csv_rows(data)
    if not rows:
        return []

    headers = [_normalize_header(cell) for cell in rows[0]]
    name_col = next((i for i, h in enumerate(headers) if h in NAME_HEADERS), None)
    birth_col = next((i for i, h in enumerate(headers) if h in BIRTH_HEADERS), None)
    if name_col is None or birth_col is None:
        raise ValidationError("Spreadsheet needs a name column and a date of birth column.")

    records: list[dict[str, str]] = []
    dropped = 0
    for row in rows[1:]:
        name = _cell_text(row[name_col]) if name_col < len(row) else ""
        birth = _cell_text(row[birth_col]) if birth_col < len(row) else ""
        if not name or not birth:
            dropped += 1
            continue
        records.append({"name": name, "dateOfBirth": _normalize_birth_date(birth)})

    LOGGER.info("Roster sheet parsed rows=%s dropped=%s", len(records), dropped)
    return records
