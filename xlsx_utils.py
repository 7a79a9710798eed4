import io
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Sequence

from fastapi import Response
from openpyxl import Workbook, load_workbook

from csv_utils import csv_bytes_to_rows, normalize_header

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def xlsx_bytes_to_rows(data: bytes) -> tuple[list[dict[str, str]], str | None]:
    """
    Read the first worksheet of an uploaded workbook.
    Row 1 holds the headers (normalized like CSV headers); every later row
    becomes a dict of cell text. Returns (rows, error_message).
    """
    try:
        wb = load_workbook(io.BytesIO(data), data_only=True)
    except Exception as exc:  # BadZipFile, KeyError or InvalidFileException
        return [], f"could not read workbook: {exc}"

    sheet = wb.active
    values = list(sheet.values)

    if not values or not any(h is not None for h in values[0]):
        return [], "Excel header not found"

    headers = [normalize_header(_cell_text(h)) for h in values[0]]
    rows: list[dict[str, str]] = []
    for raw in values[1:]:
        row = {h: "" for h in headers if h}
        for h, v in zip(headers, raw):
            if h:
                row[h] = _cell_text(v)
        rows.append(row)
    return rows, None


def is_xlsx(data: bytes, filename: str | None = None) -> bool:
    if filename and filename.lower().endswith(".xlsx"):
        return True
    # .xlsx is a zip archive
    return data[:2] == b"PK"


def upload_bytes_to_rows(data: bytes, filename: str | None = None) -> tuple[list[dict[str, str]], str | None]:
    if is_xlsx(data, filename):
        return xlsx_bytes_to_rows(data)
    return csv_bytes_to_rows(data)


def read_rows_file(path) -> list[dict[str, str]]:
    """Rows from a .xlsx or .csv file on disk; raises ValueError on a bad header."""
    path = Path(path)
    rows, error = upload_bytes_to_rows(path.read_bytes(), path.name)
    if error:
        raise ValueError(f"{path}: {error}")
    return rows


def rows_to_xlsx_response(
    rows: Iterable[Any],
    *,
    columns: Sequence[tuple[str, str]],
    filename: str = "export.xlsx",
    sheet_title: str = "Assets",
) -> Response:
    """Write rows (dicts or objects) to a one-sheet workbook download; columns are (header, key) pairs."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title
    ws.append([h for h, _ in columns])
    ws.freeze_panes = "A2"

    for r in rows:
        ws.append([r.get(key) if isinstance(r, dict) else getattr(r, key, None) for _, key in columns])

    buf = io.BytesIO()
    wb.save(buf)
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=buf.getvalue(), media_type=XLSX_MEDIA_TYPE, headers=headers)
