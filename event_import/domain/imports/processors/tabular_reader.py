"""
Read CSV and Excel uploads into sheets of JSON-safe row dictionaries.
"""
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

import pandas as pd

from event_import.core.exceptions import ValidationError
from event_import.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

CSV_EXTENSIONS = (".csv", ".tsv", ".txt")
EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")


@dataclass
class Sheet:
    index: int
    name: str
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def columns(self) -> List[str]:
        return list(self.rows[0].keys()) if self.rows else []


def _frame_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    # Header whitespace breaks field mapping and transform paths
    df = df.rename(columns=lambda col: str(col).strip())
    df = df.dropna(how="all")
    records = df.to_dict("records")

    # Convert pandas NaN/NaT values to None and numpy scalars to Python values
    for record in records:
        for key, value in record.items():
            if not isinstance(value, (list, dict)) and pd.isna(value):
                record[key] = None
            else:
                record[key] = make_json_safe(value)
    return records


def process_csv(file_content: bytes, delimiter: str = ",") -> List[Dict[str, Any]]:
    """Process CSV file and return list of dictionaries."""
    try:
        df = pd.read_csv(io.BytesIO(file_content), sep=delimiter, encoding="utf-8-sig")
    except pd.errors.EmptyDataError:
        return []
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ValidationError(f"Could not read CSV file: {e}")
    return _frame_to_records(df)


def process_excel_sheets(file_content: bytes) -> Dict[str, List[Dict[str, Any]]]:
    """Process every sheet of an Excel workbook."""
    try:
        sheets_dict = pd.read_excel(io.BytesIO(file_content), sheet_name=None, engine="openpyxl")
    except Exception as e:
        raise ValidationError(f"Could not read Excel file: {e}")
    return {str(name): _frame_to_records(df) for name, df in sheets_dict.items()}


def read_sheets(file_name: str, file_content: bytes) -> List[Sheet]:
    """
    Read an uploaded file into sheets. CSV files yield a single sheet named
    after the file; workbooks yield one sheet per worksheet.
    """
    lowered = (file_name or "").lower()
    if lowered.endswith(CSV_EXTENSIONS):
        delimiter = "\t" if lowered.endswith(".tsv") else ","
        stem = file_name.rsplit(".", 1)[0] or "Sheet1"
        sheets = [Sheet(index=0, name=stem, rows=process_csv(file_content, delimiter=delimiter))]
    elif lowered.endswith(EXCEL_EXTENSIONS):
        sheets = [
            Sheet(index=index, name=name, rows=rows)
            for index, (name, rows) in enumerate(process_excel_sheets(file_content).items())
        ]
    else:
        raise ValidationError(f"Unsupported file type: {file_name}", field="file_name")

    logger.info("Read %d sheet(s) from %s (%s rows)", len(sheets), file_name, sum(len(s.rows) for s in sheets))
    return sheets


def read_sheet(file_name: str, file_content: bytes, sheet_index: int) -> Sheet:
    sheets = read_sheets(file_name, file_content)
    for sheet in sheets:
        if sheet.index == sheet_index:
            return sheet
    raise ValidationError(f"Sheet {sheet_index} not found in {file_name}", field="sheet_index")
