from pathlib import Path


def _po_body(po_number="PO-9001"):
    return {
        "po_number": po_number,
        "date": "2024-04-01T00:00:00",
        "vendor_name": "Acme",
        "line_items": [
            {"product_name": "Laptop", "quantity": 2, "unit_price": 100.0},
            {"product_name": "Dock", "quantity": 1, "unit_price": 50.0, "gst": 0},
        ],
    }


def _category_with_sub(client):
    r = client.post("/categories", json={"name": "Laptops", "description": "Portable computers"})
    assert r.status_code == 201, r.text
    category = r.json()
    r = client.post("/sub-categories", json={"category_id": category["id"], "name": "ThinkPad"})
    assert r.status_code == 201, r.text
    return category, r.json()


def test_root_and_empty_dashboard(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["docs"] == "/docs"

    r = client.get("/dashboard/stats")
    assert r.json() == {"asset_count": 0, "po_count": 0, "category_count": 0}


def test_category_flow_and_status_mapping(client):
    category, sub = _category_with_sub(client)
    assert category["slug"] == "laptops"
    assert sub["slug"] == "laptops-thinkpad"

    # duplicate name
    r = client.post("/categories", json={"name": "Laptops"})
    assert r.status_code == 409
    assert r.json()["kind"] == "constraint_violation"

    # parent with children
    r = client.delete(f"/categories/{category['id']}")
    assert r.status_code == 409

    r = client.patch(f"/categories/{category['id']}", json={"name": "Notebooks"})
    assert r.status_code == 200
    assert r.json()["slug"] == "notebooks"

    r = client.get("/categories")
    assert [c["name"] for c in r.json()] == ["Notebooks"]
    assert [s["name"] for s in r.json()[0]["sub_categories"]] == ["ThinkPad"]

    assert client.delete(f"/sub-categories/{sub['id']}").status_code == 204
    assert client.delete(f"/categories/{category['id']}").status_code == 204
    assert client.delete(f"/categories/{category['id']}").status_code == 404

    r = client.post("/categories", json={"name": "  "})
    assert r.status_code == 400


def test_asset_crud(client):
    _, sub = _category_with_sub(client)

    r = client.post("/assets", json={"sub_category_id": sub["id"], "properties": {"serial": "SN1"}})
    assert r.status_code == 201, r.text
    asset = r.json()
    assert asset["status"] == "ACTIVE"

    r = client.patch(f"/assets/{asset['id']}", json={"status": "RETIRED"})
    assert r.status_code == 200
    assert r.json()["status"] == "RETIRED"

    r = client.get(f"/assets/{asset['id']}")
    assert r.status_code == 200
    assert r.json()["sub_category"]["category"]["name"] == "Laptops"

    r = client.get("/assets?limit=0")
    assert len(r.json()) == 1

    # unknown field and missing parent
    assert client.post("/assets", json={"sub_category_id": sub["id"], "colour": "red"}).status_code == 422
    r = client.post("/assets", json={"sub_category_id": "missing"})
    assert r.status_code == 409

    assert client.delete(f"/assets/{asset['id']}").status_code == 204
    r = client.get(f"/assets/{asset['id']}")
    assert r.status_code == 404
    assert r.json()["kind"] == "not_found"


def test_purchase_order_receive_flow(client):
    _, sub = _category_with_sub(client)

    r = client.post("/purchase-orders", json=_po_body())
    assert r.status_code == 201, r.text
    po = r.json()
    assert po["total_amount"] == 286.0
    assert po["status"] == "ISSUED"
    laptop_line = po["line_items"][0]

    r = client.post("/purchase-orders", json=_po_body())
    assert r.status_code == 409

    r = client.post(
        f"/purchase-orders/{po['id']}/receive",
        json={"items": [{"line_item_id": laptop_line["id"], "sub_category_id": sub["id"], "quantity": 3}]},
    )
    assert r.status_code == 400

    r = client.post(
        f"/purchase-orders/{po['id']}/receive",
        json={
            "items": [
                {"line_item_id": laptop_line["id"], "sub_category_id": sub["id"], "quantity": 2, "serials": ["A", "B"]}
            ]
        },
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "PARTIAL"

    r = client.get("/purchase-orders?search=acme&status=PARTIAL")
    assert [p["po_number"] for p in r.json()] == ["PO-9001"]

    r = client.get("/dashboard/stats")
    assert r.json()["asset_count"] == 2

    assert client.delete(f"/purchase-orders/{po['id']}").status_code == 204
    assert client.get(f"/purchase-orders/{po['id']}").status_code == 404
    assert client.get("/dashboard/stats").json()["asset_count"] == 2


def test_purchase_order_import_upload(client):
    content = (
        "PO No,Date,Vendor,Product,Quantity,Unit Price,GST\n"
        "PO-1,01/04/2024,Acme,Mouse,2,100,\n"
        "PO-1,01/04/2024,Acme,Pad,1,50,0\n"
        "PO-2,2024-04-03,Bharat,Cable,10,5,18\n"
    )
    r = client.post("/purchase-orders/import", files={"file": ("pos.csv", content.encode("utf-8"), "text/csv")})
    assert r.status_code == 200, r.text
    assert r.json() == {"total": 2, "success": 2, "errors": []}

    r = client.post(
        "/purchase-orders/import",
        files={"file": ("bad.csv", b"po number,product\nPO-3,x\n", "text/csv")},
    )
    assert r.status_code == 400


def test_maintenance_flow(client):
    _, sub = _category_with_sub(client)
    asset = client.post("/assets", json={"sub_category_id": sub["id"]}).json()

    r = client.post("/maintenance", json={"asset_id": asset["id"], "issue_type": "Screen", "description": "Flickers"})
    assert r.status_code == 201, r.text
    record = r.json()
    assert client.get(f"/assets/{asset['id']}").json()["status"] == "IN_REPAIR"

    r = client.get("/maintenance")
    assert r.json()[0]["asset"]["sub_category"]["name"] == "ThinkPad"

    assert client.post(f"/maintenance/{record['id']}/resolve", json={"cost": -1}).status_code == 400
    r = client.post(f"/maintenance/{record['id']}/resolve", json={"cost": 250})
    assert r.status_code == 200
    assert r.json()["status"] == "CLOSED"
    assert client.get(f"/assets/{asset['id']}").json()["status"] == "ACTIVE"

    # assets with history cannot be deleted
    assert client.delete(f"/assets/{asset['id']}").status_code == 409


def test_user_flow(client):
    assert client.get("/users/check-init").json() == {"initialized": False}

    r = client.post("/users/register", json={"username": "root", "password": "pw", "name": "Root"})
    assert r.status_code == 201, r.text
    admin = r.json()
    assert admin["role"] == "ADMIN"
    assert "password" not in admin

    assert client.get("/users/check-init").json() == {"initialized": True}

    r = client.post("/users/login", json={"username": "root", "password": "pw"})
    assert r.status_code == 200
    assert r.json()["id"] == admin["id"]

    r = client.post("/users/login", json={"username": "root", "password": "nope"})
    assert r.status_code == 401

    r = client.post(f"/users/{admin['id']}/password", json={"new_password": "pw2"})
    assert r.status_code == 422
    r = client.post(f"/users/{admin['id']}/password", json={"current_password": "wrong", "new_password": "pw2"})
    assert r.status_code == 401
    r = client.post(f"/users/{admin['id']}/password", json={"current_password": "pw", "new_password": "pw2"})
    assert r.status_code == 200
    assert client.post("/users/login", json={"username": "root", "password": "pw2"}).status_code == 200
    r = client.post("/users/missing/password", json={"current_password": "pw2", "new_password": "x"})
    assert r.status_code == 404

    r = client.post("/users/register", json={"username": "eve", "password": "pw", "name": "Eve", "role": "ADMIN"})
    assert r.status_code == 201, r.text
    assert r.json()["role"] == "USER"

    users = client.get("/users").json()
    assert [u["username"] for u in users] == ["eve", "root"]
    assert "password" not in users[0]


def test_audit_logs_and_backup(client, app_module):
    _category_with_sub(client)

    r = client.get("/audit-logs?limit=5000")
    assert r.status_code == 200
    assert sorted(a["entity_type"] for a in r.json()) == ["Category", "SubCategory"]

    r = client.post("/backup")
    assert r.status_code == 200, r.text
    path = Path(r.json()["path"])
    assert path.exists()
    assert path.parent.name == "backups"
