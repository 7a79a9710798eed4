import csv
import io
from typing import Any, Iterable, Sequence

from fastapi.responses import StreamingResponse

HEADER_ALIASES = {
    "sub category": "subcategory",
    "sub-category": "subcategory",
    "sub_category": "subcategory",
    "po no": "po number",
    "po_number": "po number",
    "po #": "po number",
    "quantity": "qty",
    "unit price": "price",
    "unit_price": "price",
    "product name": "product",
    "vendor name": "vendor",
    "serial number": "serial no",
    "serial_no": "serial no",
}


def decode_csv_bytes(data: bytes) -> str:
    # spreadsheet exports: UTF-8 with BOM, plain UTF-8, then Windows code pages
    for enc in ("utf-8-sig", "utf-8", "cp1252"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


def normalize_header(h: str) -> str:
    key = " ".join((h or "").strip().lower().split())
    return HEADER_ALIASES.get(key, key)


def csv_bytes_to_rows(data: bytes) -> tuple[list[dict[str, str]], str | None]:
    """
    Turn uploaded CSV bytes into rows keyed by normalized (lower-case) headers.
    Returns (rows, error_message):
      - success: (rows, None)
      - failure: ([], "CSV header not found")
    """
    text = decode_csv_bytes(data)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return [], "CSV header not found"

    field_map = {fn: normalize_header(fn) for fn in reader.fieldnames}

    rows: list[dict[str, str]] = []
    for raw in reader:
        row: dict[str, str] = {}
        for k, v in raw.items():
            if k is None:
                continue
            nk = field_map.get(k, k)
            row[nk] = v if v is not None else ""
        rows.append(row)

    return rows, None


def rows_to_csv_response(
    rows: Iterable[Any],
    *,
    columns: Sequence[tuple[str, str]],
    filename: str = "export.csv",
) -> StreamingResponse:
    """Stream rows (dicts or objects) as a CSV download; columns are (header, key) pairs."""

    def cell(row: Any, key: str) -> str:
        value = row.get(key) if isinstance(row, dict) else getattr(row, key, None)
        if value is None:
            return ""
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return str(value)

    def generate():
        buf = io.StringIO()
        w = csv.writer(buf)

        w.writerow([h for h, _ in columns])
        yield buf.getvalue()
        buf.seek(0)
        buf.truncate(0)

        for r in rows:
            w.writerow([cell(r, key) for _, key in columns])
            yield buf.getvalue()
            buf.seek(0)
            buf.truncate(0)

    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(generate(), media_type="text/csv; charset=utf-8", headers=headers)

