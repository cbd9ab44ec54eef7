from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from sistur import services
from sistur.models import Assessment, ImportResult, Indicator
from sistur.normalizer import ConfigError

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int) -> object:
    """Safely get a column value from a row tuple."""
    return row[idx] if idx < len(row) else None


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if blank or unparseable."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return float(str(value).replace(",", ".")) if isinstance(value, str) else float(value)
    except (ValueError, TypeError):
        return None


def _b(value: object) -> bool:
    """Safely coerce cell value to bool."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "sim", "s")


# ---------------------------------------------------------------------------
# Sheet parsers
# ---------------------------------------------------------------------------

# Column mappings (field_name -> column_index), one header row each
_INDICATOR_COLS = {
    "code": 0, "name": 1, "pillar": 2, "theme": 3, "normalization": 4,
    "direction": 5, "min_ref": 6, "max_ref": 7, "target": 8, "weight": 9,
    "intersectoral_dependency": 10, "minimum_tier": 11, "unit": 12,
}
_NUMERIC = ("min_ref", "max_ref", "target", "weight")

_VALUE_COLS = {"indicator_code": 0, "value_raw": 1, "source": 2, "confidence": 3}


def _parse_indicator_sheet(ws) -> list[dict]:
    out: list[dict] = []
    for row in ws.iter_rows(min_row=2, values_only=True):
        if not row or not _s(_col(row, _INDICATOR_COLS["code"])):
            continue
        entry: dict = {}
        for field, idx in _INDICATOR_COLS.items():
            raw = _col(row, idx)
            if field in _NUMERIC:
                entry[field] = _f(raw)
            elif field == "intersectoral_dependency":
                entry[field] = _b(raw)
            else:
                entry[field] = _s(raw)
        for field in ("pillar", "normalization", "direction", "minimum_tier"):
            entry[field] = entry[field].upper() or None
        entry["code"] = entry["code"].upper()
        out.append(entry)
    return out


def _parse_value_sheet(ws) -> list[dict]:
    out: list[dict] = []
    for row in ws.iter_rows(min_row=2, values_only=True):
        if not row or not _s(_col(row, 0)):
            continue
        out.append({
            "indicator_code": _s(_col(row, _VALUE_COLS["indicator_code"])).upper(),
            "value_raw": _f(_col(row, _VALUE_COLS["value_raw"])),
            "source": _s(_col(row, _VALUE_COLS["source"])) or "xlsx",
            "confidence": _s(_col(row, _VALUE_COLS["confidence"])),
        })
    return out


def _upsert_indicator(session: Session, data: dict, existing: dict[str, Indicator]) -> bool:
    """Insert or update by code. Returns True when created. Raises ConfigError."""
    ind = existing.get(data["code"])
    if ind is None:
        ind = services.create_indicator(session, data)
        existing[ind.code] = ind
        return True
    services.update_indicator(ind, data)
    return False


def import_xlsx(file_path: str | Path, session: Session, assessment: Assessment | None = None) -> ImportResult:
    """Import the indicator catalog and, given an assessment, its raw values.

    Sheets are recognized by name: one containing "indic" holds the catalog
    (upserted by code), one containing "valor" or "value" holds values.
    Catalog rows with broken reference data are skipped and reported.
    """
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)

    indicator_rows: list[dict] = []
    value_rows: list[dict] = []
    for sheet_name in wb.sheetnames:
        ws = wb[sheet_name]
        lower = sheet_name.casefold()
        if "indic" in lower:
            indicator_rows = _parse_indicator_sheet(ws)
        elif "valor" in lower or "value" in lower:
            value_rows = _parse_value_sheet(ws)

    wb.close()

    existing = {i.code: i for i in session.execute(select(Indicator)).scalars()}
    result = ImportResult()

    # Catalog first so that value rows can reference new indicators
    for data in indicator_rows:
        try:
            created = _upsert_indicator(session, data, existing)
        except ConfigError as exc:
            log.warning("Import: skipping indicator %s: %s", data["code"], exc)
            result.skipped.append(data["code"])
            continue
        if created:
            result.indicators_created += 1
        else:
            result.indicators_updated += 1
    session.flush()

    if value_rows:
        if assessment is None:
            log.warning("Import: %d value rows ignored, no assessment given", len(value_rows))
        else:
            upserted = services.upsert_values(session, assessment, value_rows)
            result.values_written = upserted["written"]
            result.skipped.extend(upserted["skipped"])

    session.commit()
    return result
