from datetime import datetime, timezone

import pytest

import crud
from errors import AuthenticationFailed, ConstraintViolation, RecordNotFound, ServiceError
from models import (
    CategoryDraft,
    CategoryUpdate,
    IssueReport,
    LineItemDraft,
    LoginIn,
    PurchaseOrderDraft,
    ReceiveItem,
    ReceivePayload,
    RegisterIn,
    SubCategoryDraft,
    SubCategoryUpdate,
)


def _draft(po_number="PO-2001", **extra):
    items = extra.pop(
        "line_items",
        [
            LineItemDraft(product_name="Laptop", quantity=2, unit_price=100.0),
            LineItemDraft(product_name="Dock", quantity=1, unit_price=50.0, discount=10.0, gst=0.0),
        ],
    )
    return PurchaseOrderDraft(po_number=po_number, date=datetime(2024, 4, 1), line_items=items, **extra)


def _audit_actions(data_client):
    return sorted(a.action for a in data_client.audit_logs.find_many())


def test_slugify():
    assert crud.slugify("Network Switches") == "network-switches"
    assert crud.slugify("AV / Systems") == "av-systems"
    assert crud.slugify("UPS") == "ups"


def test_seed_database_is_idempotent(data_client):
    assert crud.seed_database(data_client) == 13
    assert crud.seed_database(data_client) == 0
    cabling = data_client.categories.find_unique({"name": "Cabling Items"})
    assert cabling.slug == "cabling"


def test_dashboard_stats(data_client, electronics, purchase_order):
    _, laptops = electronics
    data_client.assets.create({"sub_category_id": laptops.id})
    stats = crud.dashboard_stats(data_client)
    assert (stats.asset_count, stats.po_count, stats.category_count) == (1, 1, 1)


def test_category_services_write_audit_entries(data_client):
    category = crud.create_category(data_client, CategoryDraft(name="  Network Switches "))
    assert category.name == "Network Switches"
    assert category.slug == "network-switches"

    renamed = crud.update_category(data_client, category.id, CategoryUpdate(name="Core Switches"))
    assert renamed.slug == "core-switches"

    sub = crud.create_sub_category(data_client, SubCategoryDraft(category_id=category.id, name="L3 Switch"))
    assert sub.slug == "core-switches-l3-switch"

    moved = crud.update_sub_category(data_client, sub.id, SubCategoryUpdate(name="L2 Switch"))
    assert moved.slug == "core-switches-l2-switch"

    listed = crud.list_categories(data_client)
    assert [c.name for c in listed] == ["Core Switches"]
    assert [s.name for s in listed[0].sub_categories] == ["L2 Switch"]

    with pytest.raises(ConstraintViolation):
        crud.delete_category(data_client, category.id)

    crud.delete_sub_category(data_client, sub.id)
    crud.delete_category(data_client, category.id)
    assert data_client.categories.count() == 0
    assert _audit_actions(data_client) == ["CREATE", "CREATE", "DELETE", "DELETE", "UPDATE", "UPDATE"]


def test_category_name_must_not_be_blank(data_client):
    with pytest.raises(ServiceError):
        crud.create_category(data_client, CategoryDraft(name="   "))
    with pytest.raises(RecordNotFound):
        crud.create_sub_category(data_client, SubCategoryDraft(category_id="missing", name="Any"))


def test_get_or_create_sub_category(data_client):
    sub = crud.get_or_create_sub_category(data_client, "Printers", None)
    assert sub.name == "General"
    assert sub.slug == "printers-general"
    again = crud.get_or_create_sub_category(data_client, "Printers", "  ")
    assert again.id == sub.id
    assert data_client.categories.count() == 1


def test_asset_services(data_client, electronics):
    from models import AssetIn, AssetUpdate

    category, laptops = electronics
    asset = crud.create_asset(data_client, AssetIn(sub_category_id=laptops.id, properties={"serial": "SN1"}))
    assert asset.status == "ACTIVE"

    updated = crud.update_asset(data_client, asset.id, AssetUpdate(status="RETIRED"))
    assert updated.status == "RETIRED"

    fetched = crud.get_asset(data_client, asset.id)
    assert fetched.sub_category.category.name == category.name
    assert fetched.maintenance_records == []

    listed = crud.list_assets(data_client, category_id=category.id)
    assert [a.id for a in listed] == [asset.id]
    assert crud.list_assets(data_client, category_id="other") == []

    crud.delete_asset(data_client, asset.id)
    with pytest.raises(RecordNotFound):
        crud.get_asset(data_client, asset.id)


def test_line_total():
    assert crud.line_total(LineItemDraft(product_name="x", quantity=2, unit_price=100.0)) == 236.0
    assert crud.line_total(LineItemDraft(product_name="x", quantity=1, unit_price=50.0, discount=10.0, gst=0.0)) == 40.0


def test_create_purchase_order_computes_totals(data_client):
    po = crud.create_purchase_order(data_client, _draft(vendor_name="Acme"))
    assert po.total_amount == 276.0
    assert [li.sr_no for li in po.line_items] == [1, 2]
    assert [li.total_amount for li in po.line_items] == [236.0, 40.0]
    assert po.line_items[0].uom == "Nos"
    assert po.vendor_name_snap == "Acme"
    assert _audit_actions(data_client) == ["CREATE"]


def test_create_purchase_order_rejects_bad_quantity(data_client):
    draft = _draft(line_items=[LineItemDraft(product_name="x", quantity=0, unit_price=1.0)])
    with pytest.raises(ServiceError):
        crud.create_purchase_order(data_client, draft)
    assert data_client.purchase_orders.count() == 0


def test_vendor_snapshot_copied_when_only_vendor_id_given(data_client):
    vendor = data_client.vendors.create({"name": "Acme", "gstin": "29AAA", "address": "1 Main St"})
    po = crud.create_purchase_order(data_client, _draft(vendor_id=vendor.id))
    assert (po.vendor_name_snap, po.gstin, po.billing_address) == ("Acme", "29AAA", "1 Main St")

    # later vendor edits leave the snapshot alone
    data_client.vendors.update({"id": vendor.id}, {"name": "Acme Renamed"})
    assert crud.get_purchase_order(data_client, po.id).vendor_name_snap == "Acme"

    explicit = crud.create_purchase_order(data_client, _draft("PO-2002", vendor_id=vendor.id, vendor_name="Other"))
    assert explicit.vendor_name_snap == "Other"
    assert explicit.gstin is None


def test_list_purchase_orders_filters_and_sorts(data_client):
    crud.create_purchase_order(data_client, _draft("PO-A", vendor_name="Acme", total_amount=10.0))
    crud.create_purchase_order(data_client, _draft("PO-B", vendor_name="Bharat", total_amount=30.0))
    crud.create_purchase_order(data_client, _draft("PO-C", vendor_name="Crest", total_amount=20.0))

    by_total = crud.list_purchase_orders(data_client, sort="total_amount", order="asc")
    assert [p.po_number for p in by_total] == ["PO-A", "PO-C", "PO-B"]

    found = crud.list_purchase_orders(data_client, search="bhar")
    assert [p.po_number for p in found] == ["PO-B"]

    assert crud.list_purchase_orders(data_client, status="COMPLETED") == []
    assert len(crud.list_purchase_orders(data_client, sort="nonsense")) == 3


def test_receive_items_partial_then_complete(data_client, electronics):
    _, laptops = electronics
    po = crud.create_purchase_order(data_client, _draft())
    laptop_line, dock_line = po.line_items

    partial = crud.receive_items(
        data_client,
        po.id,
        ReceivePayload(
            items=[ReceiveItem(line_item_id=laptop_line.id, sub_category_id=laptops.id, quantity=1, serials=["SN-1", " "])]
        ),
    )
    assert partial.status == "PARTIAL"
    assert partial.line_items[0].received_qty == 1

    assets = data_client.assets.find_many({"purchase_order_id": po.id})
    assert len(assets) == 1
    assert assets[0].properties == {"name": "Laptop", "serial": "SN-1", "po_ref": po.id}

    done = crud.receive_items(
        data_client,
        po.id,
        ReceivePayload(
            items=[
                ReceiveItem(line_item_id=laptop_line.id, sub_category_id=laptops.id, quantity=1, serials=["SN-2"]),
                ReceiveItem(line_item_id=dock_line.id, sub_category_id=laptops.id, quantity=1),
            ]
        ),
    )
    assert done.status == "COMPLETED"
    assert data_client.assets.count({"purchase_order_id": po.id}) == 2
    assert _audit_actions(data_client).count("RECEIVE") == 2


def test_receive_items_rejections_roll_back(data_client, electronics):
    _, laptops = electronics
    po = crud.create_purchase_order(data_client, _draft())
    other = crud.create_purchase_order(data_client, _draft("PO-OTHER"))
    laptop_line, dock_line = po.line_items

    def receive(*items):
        return crud.receive_items(data_client, po.id, ReceivePayload(items=list(items)))

    with pytest.raises(ServiceError):
        receive(
            ReceiveItem(line_item_id=dock_line.id, sub_category_id=laptops.id, quantity=1, serials=["D-1"]),
            ReceiveItem(line_item_id=laptop_line.id, sub_category_id=laptops.id, quantity=3),
        )
    with pytest.raises(ServiceError):
        receive(ReceiveItem(line_item_id=laptop_line.id, sub_category_id=laptops.id, quantity=0))
    with pytest.raises(ServiceError):
        receive(ReceiveItem(line_item_id=laptop_line.id, sub_category_id=laptops.id, quantity=1, serials=["A", "B"]))
    with pytest.raises(ServiceError):
        receive(ReceiveItem(line_item_id=other.line_items[0].id, sub_category_id=laptops.id, quantity=1))
    with pytest.raises(RecordNotFound):
        crud.receive_items(data_client, "missing", ReceivePayload(items=[]))

    # the dock line from the first attempt was rolled back with the rest
    assert data_client.line_items.find_unique({"id": dock_line.id}).received_qty == 0
    assert data_client.assets.count() == 0
    assert crud.get_purchase_order(data_client, po.id).status == "ISSUED"


def test_delete_purchase_order_keeps_received_assets(data_client, electronics):
    _, laptops = electronics
    po = crud.create_purchase_order(data_client, _draft())
    crud.receive_items(
        data_client,
        po.id,
        ReceivePayload(
            items=[ReceiveItem(line_item_id=po.line_items[0].id, sub_category_id=laptops.id, quantity=1, serials=["S"])]
        ),
    )

    crud.delete_purchase_order(data_client, po.id)
    assert data_client.purchase_orders.count() == 0
    assert data_client.line_items.count() == 0
    assets = data_client.assets.find_many()
    assert len(assets) == 1
    assert assets[0].purchase_order_id is None
    assert assets[0].properties["po_ref"] == po.id

    with pytest.raises(RecordNotFound):
        crud.delete_purchase_order(data_client, po.id)


def test_maintenance_report_and_resolve(data_client, electronics):
    _, laptops = electronics
    asset = data_client.assets.create({"sub_category_id": laptops.id})

    record = crud.report_issue(
        data_client, IssueReport(asset_id=asset.id, issue_type="Screen", description="Flickers", reported_by="ops")
    )
    assert record.status == "OPEN"
    assert data_client.assets.find_unique({"id": asset.id}).status == "IN_REPAIR"

    listed = crud.list_maintenance_records(data_client)
    assert listed[0].asset.sub_category.category.name == "Electronics"

    with pytest.raises(ServiceError):
        crud.resolve_maintenance_record(data_client, record.id, -5.0)

    resolved = crud.resolve_maintenance_record(data_client, record.id, 1200.0)
    assert resolved.status == "CLOSED"
    assert resolved.cost == 1200.0
    assert resolved.resolved_date is not None
    assert data_client.assets.find_unique({"id": asset.id}).status == "ACTIVE"

    with pytest.raises(ServiceError):
        crud.resolve_maintenance_record(data_client, record.id, 0.0)
    with pytest.raises(RecordNotFound):
        crud.report_issue(data_client, IssueReport(asset_id="missing", issue_type="x", description="y"))


def test_register_and_login(data_client):
    assert crud.check_init(data_client) is False

    admin = crud.register_user(data_client, RegisterIn(username="root", password="s3cret", name="Root"))
    assert admin.role == "ADMIN"
    user = crud.register_user(data_client, RegisterIn(username="bob", password="hunter2", name="Bob"))
    assert user.role == "USER"
    assert crud.check_init(data_client) is True

    stored = data_client.users.find_unique({"username": "bob"})
    assert stored.password != "hunter2"
    assert stored.password.startswith("$2")

    logged_in = crud.login_user(data_client, LoginIn(username="bob", password="hunter2"))
    assert logged_in.id == user.id
    assert not hasattr(logged_in, "password")

    with pytest.raises(AuthenticationFailed):
        crud.login_user(data_client, LoginIn(username="bob", password="wrong"))
    with pytest.raises(AuthenticationFailed):
        crud.login_user(data_client, LoginIn(username="nobody", password="x"))
    with pytest.raises(ConstraintViolation):
        crud.register_user(data_client, RegisterIn(username="bob", password="again", name="Bob 2"))

    crud.change_password(data_client, user.id, "hunter2", "n3w")
    assert crud.login_user(data_client, LoginIn(username="bob", password="n3w")).id == user.id
    assert [u.username for u in crud.list_users(data_client)] == ["bob", "root"]
    assert "REGISTER" in _audit_actions(data_client)


def test_change_password_needs_the_current_one(data_client):
    crud.register_user(data_client, RegisterIn(username="root", password="s3cret", name="Root"))
    user = crud.register_user(data_client, RegisterIn(username="bob", password="hunter2", name="Bob"))

    with pytest.raises(AuthenticationFailed):
        crud.change_password(data_client, user.id, "guess", "taken-over")
    with pytest.raises(RecordNotFound):
        crud.change_password(data_client, "missing", "hunter2", "x")

    assert crud.login_user(data_client, LoginIn(username="bob", password="hunter2")).id == user.id
    assert "password changed" not in [a.details for a in data_client.audit_logs.find_many()]


def test_self_registration_cannot_pick_admin(data_client):
    crud.register_user(data_client, RegisterIn(username="root", password="s3cret", name="Root"))

    eve = crud.register_user(data_client, RegisterIn(username="eve", password="x", name="Eve", role="ADMIN"))
    assert eve.role == "USER"

    ops = crud.register_user(
        data_client, RegisterIn(username="ops", password="x", name="Ops", role="ADMIN"), trusted=True
    )
    assert ops.role == "ADMIN"


def test_import_assets(data_client):
    rows = [
        {"category": "Laptops", "subcategory": "ThinkPad", "name": "T14", "serial": "SN1"},
        {"category": "", "subcategory": "", "name": "", "serial": ""},
        {"category": "", "subcategory": "", "name": "Orphan", "serial": "SN2"},
        {"category": "Laptops", "subcategory": "", "name": "Generic", "serial": "SN3"},
    ]
    report = crud.import_assets(data_client, rows)
    assert (report.total, report.success) == (3, 2)
    assert report.errors == ["row 4: missing category"]

    subs = data_client.sub_categories.find_many(order_by={"name": "asc"})
    assert [s.name for s in subs] == ["General", "ThinkPad"]
    t14 = data_client.assets.find_first({"sub_category": {"name": "ThinkPad"}})
    assert t14.properties == {"name": "T14", "serial": "SN1"}


def test_export_asset_rows(data_client, electronics):
    _, laptops = electronics
    data_client.assets.create({"sub_category_id": laptops.id, "properties": {"zone": "B", "serial": "SN1", "name": "T14"}})
    data_client.assets.create({"sub_category_id": laptops.id, "properties": {"model": "X1", "ram": 16}})

    columns, rows = crud.export_asset_rows(data_client)
    assert [h for h, _ in columns] == [
        "Asset ID",
        "Category",
        "SubCategory",
        "Status",
        "Last Updated",
        "NAME",
        "SERIAL",
        "MODEL",
        "RAM",
        "ZONE",
    ]
    assert rows[0]["category"] == "Electronics"
    assert rows[0]["subcategory"] == "Laptops"
    assert rows[1]["ram"] == "16"


def test_import_purchase_orders(data_client):
    crud.create_purchase_order(data_client, _draft("PO-OLD"))
    rows = [
        {"po number": "PO-1", "date": "01/04/2024", "vendor": "Acme", "product": "Mouse", "qty": "2", "price": "100", "gst": ""},
        {"po number": "PO-1", "date": "", "vendor": "Acme", "product": "Pad", "qty": "1", "price": "50", "gst": "0"},
        {"po number": "PO-OLD", "date": "2024-04-02", "vendor": "Acme", "product": "x", "qty": "1", "price": "1"},
        {"po number": "", "date": "", "vendor": "", "product": "", "qty": "", "price": ""},
    ]
    report = crud.import_purchase_orders(data_client, rows)
    assert (report.total, report.success) == (2, 1)
    assert report.errors == ["PO PO-OLD: already exists, skipped"]

    po = data_client.purchase_orders.find_unique({"po_number": "PO-1"}, include={"line_items": True})
    assert po.date == datetime(2024, 4, 1, tzinfo=timezone.utc)
    assert po.vendor_name_snap == "Acme"
    assert [li.total_amount for li in po.line_items] == [236.0, 50.0]
    assert po.total_amount == 286.0


def test_import_purchase_orders_requires_columns(data_client):
    with pytest.raises(ServiceError):
        crud.import_purchase_orders(data_client, [{"po number": "PO-1", "product": "x"}])


def test_backup_database(data_client, tmp_path):
    data_client.vendors.create({"name": "Acme"})
    dest = crud.backup_database(data_client, tmp_path / "copies" / "backup.db")
    assert dest.exists()
    assert dest.stat().st_size > 0
    assert _audit_actions(data_client) == ["BACKUP"]


def test_backup_requires_file_store(app_module):
    from client import DataClient

    with DataClient("sqlite://") as memory:
        with pytest.raises(ServiceError):
            crud.backup_database(memory, "unused.db")


def test_audit_log_listing(data_client):
    for i in range(3):
        crud.record_audit(data_client, "CREATE", "Thing", str(i), datetime.now(timezone.utc).isoformat())
    logs = crud.list_audit_logs(data_client, take=2)
    assert len(logs) == 2
