import io
from datetime import datetime

from openpyxl import Workbook, load_workbook

from xlsx_utils import XLSX_MEDIA_TYPE, is_xlsx, upload_bytes_to_rows, xlsx_bytes_to_rows


def _workbook_bytes(*rows):
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(list(row))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_first_sheet_rows_keyed_by_normalized_headers():
    data = _workbook_bytes(
        ("Category", "Sub Category", "Name", "Qty"),
        ("Laptops", "ThinkPad", "T14", 2.0),
        ("Printers", None, "LaserJet"),
    )
    rows, error = xlsx_bytes_to_rows(data)
    assert error is None
    assert rows[0] == {"category": "Laptops", "subcategory": "ThinkPad", "name": "T14", "qty": "2"}
    assert rows[1] == {"category": "Printers", "subcategory": "", "name": "LaserJet", "qty": ""}


def test_bad_workbooks_report_an_error():
    rows, error = xlsx_bytes_to_rows(b"PK not really a zip")
    assert rows == []
    assert error.startswith("could not read workbook")

    rows, error = xlsx_bytes_to_rows(_workbook_bytes())
    assert (rows, error) == ([], "Excel header not found")


def test_upload_dispatch_by_name_or_content():
    xlsx = _workbook_bytes(("category",), ("Laptops",))
    assert is_xlsx(xlsx)
    assert is_xlsx(b"", "ASSETS.XLSX")
    assert not is_xlsx(b"category\nLaptops\n", "assets.csv")

    assert upload_bytes_to_rows(xlsx, "assets.bin") == ([{"category": "Laptops"}], None)
    assert upload_bytes_to_rows(b"category\nLaptops\n", "assets.csv") == ([{"category": "Laptops"}], None)


def test_assets_xlsx_export_then_import(client, data_client, electronics):
    _, laptops = electronics
    data_client.assets.create({"sub_category_id": laptops.id, "properties": {"serial": "SN1", "name": "T14"}})

    r = client.get("/assets/export?format=xlsx")
    assert r.status_code == 200, r.text
    assert r.headers["content-type"] == XLSX_MEDIA_TYPE
    assert 'filename="assets_export.xlsx"' in r.headers["content-disposition"]

    sheet = load_workbook(io.BytesIO(r.content)).active
    values = list(sheet.values)
    assert sheet.title == "Assets"
    assert values[0] == ("Asset ID", "Category", "SubCategory", "Status", "Last Updated", "NAME", "SERIAL")
    assert values[1][1:4] == ("Electronics", "Laptops", "ACTIVE")
    assert values[1][5:] == ("T14", "SN1")

    r = client.post(
        "/assets/import",
        files={"file": ("assets_export.xlsx", r.content, XLSX_MEDIA_TYPE)},
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"total": 1, "success": 1, "errors": []}
    assert data_client.assets.count() == 2
    serials = sorted(a.properties.get("serial") for a in data_client.assets.find_many())
    assert serials == ["SN1", "SN1"]

    assert client.get("/assets/export?format=pdf").status_code == 422


def test_purchase_orders_xlsx_import(client, data_client):
    data = _workbook_bytes(
        ("PO Number", "Date", "Vendor", "Product", "Qty", "Price"),
        ("PO-X1", datetime(2024, 4, 1), "Acme", "Mouse", 2, 100),
        ("PO-X1", datetime(2024, 4, 1), "Acme", "Pad", 1, 50.5),
    )
    r = client.post("/purchase-orders/import", files={"file": ("pos.xlsx", data, XLSX_MEDIA_TYPE)})
    assert r.status_code == 200, r.text
    assert r.json() == {"total": 1, "success": 1, "errors": []}

    po = data_client.purchase_orders.find_unique({"po_number": "PO-X1"}, include={"line_items": True})
    assert po.vendor_name_snap == "Acme"
    assert po.date.date().isoformat() == "2024-04-01"
    assert [(li.product_name, li.quantity, li.unit_price) for li in po.line_items] == [
        ("Mouse", 2, 100.0),
        ("Pad", 1, 50.5),
    ]
