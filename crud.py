from __future__ import annotations

import logging
import os
import re
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import bcrypt

from client import DataClient, TransactionClient
from errors import AuthenticationFailed, DataAccessError, ServiceError
from models import (
    Asset,
    AssetIn,
    AssetUpdate,
    AuditLog,
    Category,
    CategoryDraft,
    CategoryUpdate,
    DashboardStats,
    ImportReport,
    IssueReport,
    LineItemDraft,
    LoginIn,
    MaintenanceRecord,
    PurchaseOrder,
    PurchaseOrderDraft,
    ReceivePayload,
    RegisterIn,
    SubCategory,
    SubCategoryDraft,
    SubCategoryUpdate,
    UserPublic,
)
from orm import utcnow

logger = logging.getLogger("app.crud")

Client = Union[DataClient, TransactionClient]

ASSET_ACTIVE = "ACTIVE"
ASSET_IN_REPAIR = "IN_REPAIR"
RECORD_OPEN = "OPEN"
RECORD_CLOSED = "CLOSED"
PO_PARTIAL = "PARTIAL"
PO_COMPLETED = "COMPLETED"

DEFAULT_SUB_CATEGORY = "General"
DEFAULT_GST = 18.0
DEFAULT_UOM = "Nos"

DEFAULT_CATEGORIES = [
    {"name": "Computers", "slug": "computers", "description": "Desktops, Workstations, Servers"},
    {"name": "Laptops", "slug": "laptops", "description": "Portable computers"},
    {"name": "Printers", "slug": "printers", "description": "Network and Local Printers"},
    {"name": "Access Points", "slug": "access-points", "description": "HPE Aruba, Extreme, etc."},
    {"name": "Network Switches", "slug": "network-switches", "description": "L2/L3 Switches"},
    {"name": "FRTs", "slug": "frts", "description": "Face Recognition Terminals"},
    {"name": "Turnstiles", "slug": "turnstiles", "description": "Physical security barriers"},
    {"name": "Projectors", "slug": "projectors", "description": "Classroom and Auditorium projectors"},
    {"name": "AV Systems", "slug": "av-systems", "description": "Audio/Video equipment"},
    {"name": "Cabling Items", "slug": "cabling", "description": "Patch cords, rolls, connectors"},
    {"name": "UPS", "slug": "ups", "description": "Uninterruptible Power Supplies"},
    {"name": "ID Cards", "slug": "id-cards", "description": "Employee/Student ID stock"},
    {"name": "Licenses", "slug": "licenses", "description": "Software Licenses"},
]

ALLOWED_PO_SORTS = {"date", "po_number", "total_amount", "updated_at"}
EXPORT_PRIORITY = ["name", "serial", "serial no", "model"]
DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%m/%d/%Y", "%Y/%m/%d")


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower())


def _bcrypt_rounds() -> int:
    return int(os.getenv("APP_BCRYPT_ROUNDS", "12"))


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


# ---------- Audit ----------
def record_audit(
    client: Client,
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    details: Optional[str] = None,
) -> AuditLog:
    return client.audit_logs.create(
        {"action": action, "entity_type": entity_type, "entity_id": entity_id, "details": details}
    )


def list_audit_logs(client: Client, *, take: int = 100) -> list[AuditLog]:
    return client.audit_logs.find_many(order_by={"timestamp": "desc"}, take=take)


# ---------- Setup / dashboard ----------
def seed_database(client: Client) -> int:
    """Insert the default categories into an empty store. Returns how many were created."""
    if client.categories.count() > 0:
        return 0
    created = client.categories.create_many(DEFAULT_CATEGORIES, skip_duplicates=True)
    logger.info("seeded categories=%s", created)
    return created


def dashboard_stats(client: Client) -> DashboardStats:
    return DashboardStats(
        asset_count=client.assets.count(),
        po_count=client.purchase_orders.count(),
        category_count=client.categories.count(),
    )


# ---------- Category / SubCategory ----------
def list_categories(client: Client) -> list[Category]:
    return client.categories.find_many(order_by={"name": "asc"}, include={"sub_categories": True})


def create_category(client: Client, draft: CategoryDraft) -> Category:
    name = (draft.name or "").strip()
    if not name:
        raise ServiceError("category name is empty")

    def work(tx: TransactionClient) -> Category:
        category = tx.categories.create({"name": name, "slug": slugify(name), "description": draft.description})
        record_audit(tx, "CREATE", "Category", category.id, name)
        return category

    return client.transaction(work)


def update_category(client: Client, category_id: str, body: CategoryUpdate) -> Category:
    data = body.model_dump(exclude_unset=True)
    if "name" in data:
        name = (data["name"] or "").strip()
        if not name:
            raise ServiceError("category name is empty")
        data["name"] = name
        data["slug"] = slugify(name)

    def work(tx: TransactionClient) -> Category:
        category = tx.categories.update({"id": category_id}, data)
        record_audit(tx, "UPDATE", "Category", category.id, category.name)
        return category

    return client.transaction(work)


def delete_category(client: Client, category_id: str) -> Category:
    # sub-categories restrict the delete
    def work(tx: TransactionClient) -> Category:
        category = tx.categories.delete({"id": category_id})
        record_audit(tx, "DELETE", "Category", category.id, category.name)
        return category

    return client.transaction(work)


def create_sub_category(client: Client, draft: SubCategoryDraft) -> SubCategory:
    name = (draft.name or "").strip()
    if not name:
        raise ServiceError("sub-category name is empty")

    def work(tx: TransactionClient) -> SubCategory:
        category = tx.categories.find_unique_or_throw({"id": draft.category_id})
        sub = tx.sub_categories.create(
            {"name": name, "slug": slugify(f"{category.slug}-{name}"), "category_id": category.id}
        )
        record_audit(tx, "CREATE", "SubCategory", sub.id, f"{category.name} / {name}")
        return sub

    return client.transaction(work)


def update_sub_category(client: Client, sub_category_id: str, body: SubCategoryUpdate) -> SubCategory:
    data = body.model_dump(exclude_unset=True)

    def work(tx: TransactionClient) -> SubCategory:
        current = tx.sub_categories.find_unique_or_throw({"id": sub_category_id})
        if "name" in data or "category_id" in data:
            name = (data.get("name") or current.name).strip()
            category = tx.categories.find_unique_or_throw({"id": data.get("category_id") or current.category_id})
            data["name"] = name
            data["slug"] = slugify(f"{category.slug}-{name}")
        sub = tx.sub_categories.update({"id": sub_category_id}, data)
        record_audit(tx, "UPDATE", "SubCategory", sub.id, sub.name)
        return sub

    return client.transaction(work)


def delete_sub_category(client: Client, sub_category_id: str) -> SubCategory:
    def work(tx: TransactionClient) -> SubCategory:
        sub = tx.sub_categories.delete({"id": sub_category_id})
        record_audit(tx, "DELETE", "SubCategory", sub.id, sub.name)
        return sub

    return client.transaction(work)


def get_or_create_sub_category(tx: Client, category_name: str, sub_name: Optional[str]) -> SubCategory:
    category = tx.categories.find_first({"name": category_name})
    if category is None:
        category = tx.categories.create({"name": category_name, "slug": slugify(category_name)})

    sub_name = (sub_name or "").strip() or DEFAULT_SUB_CATEGORY
    slug = slugify(f"{category.slug}-{sub_name}")
    sub = tx.sub_categories.find_unique({"category_id": category.id, "slug": slug})
    if sub is None:
        sub = tx.sub_categories.create({"name": sub_name, "slug": slug, "category_id": category.id})
    return sub


# ---------- Asset ----------
def list_assets(client: Client, *, category_id: Optional[str] = None, take: int = 100) -> list[Asset]:
    where = {"sub_category": {"is": {"category_id": category_id}}} if category_id else None
    return client.assets.find_many(
        where,
        order_by={"updated_at": "desc"},
        take=take,
        include={"sub_category": True},
    )


def get_asset(client: Client, asset_id: str) -> Asset:
    return client.assets.find_unique_or_throw(
        {"id": asset_id},
        include={"sub_category": {"include": {"category": True}}, "maintenance_records": True},
    )


def create_asset(client: Client, body: AssetIn) -> Asset:
    def work(tx: TransactionClient) -> Asset:
        asset = tx.assets.create(body)
        record_audit(tx, "CREATE", "Asset", asset.id)
        return asset

    return client.transaction(work)


def update_asset(client: Client, asset_id: str, body: AssetUpdate) -> Asset:
    def work(tx: TransactionClient) -> Asset:
        asset = tx.assets.update({"id": asset_id}, body)
        record_audit(tx, "UPDATE", "Asset", asset.id)
        return asset

    return client.transaction(work)


def delete_asset(client: Client, asset_id: str) -> Asset:
    def work(tx: TransactionClient) -> Asset:
        asset = tx.assets.delete({"id": asset_id})
        record_audit(tx, "DELETE", "Asset", asset.id)
        return asset

    return client.transaction(work)


# ---------- PurchaseOrder ----------
def line_total(item: LineItemDraft) -> float:
    base = item.quantity * item.unit_price - item.discount
    return round(base + base * item.gst / 100, 2)


def list_purchase_orders(
    client: Client,
    *,
    search: Optional[str] = None,
    status: Optional[str] = None,
    sort: str = "date",
    order: str = "desc",
) -> list[PurchaseOrder]:
    where: dict = {}
    if search:
        where["OR"] = [
            {"po_number": {"contains": search, "mode": "insensitive"}},
            {"vendor_name_snap": {"contains": search, "mode": "insensitive"}},
        ]
    if status:
        where["status"] = status
    if sort not in ALLOWED_PO_SORTS:
        sort = "date"
    order = "asc" if (order or "").lower() == "asc" else "desc"
    return client.purchase_orders.find_many(where, order_by={sort: order}, include={"line_items": True})


def get_purchase_order(client: Client, po_id: str) -> PurchaseOrder:
    return client.purchase_orders.find_unique_or_throw({"id": po_id}, include={"line_items": True})


def create_purchase_order(client: Client, draft: PurchaseOrderDraft) -> PurchaseOrder:
    """Create an order and its line items in one write.

    Missing line totals are ``quantity * unit_price - discount`` plus ``gst``
    percent; a missing header total is the sum of the line totals. When only
    ``vendor_id`` is given, the vendor's current name, GSTIN and address are
    copied onto the order.
    """
    items = []
    for idx, item in enumerate(draft.line_items, start=1):
        if item.quantity <= 0:
            raise ServiceError(f"line {idx}: quantity must be positive")
        items.append(
            {
                "sr_no": item.sr_no if item.sr_no is not None else idx,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "uom": item.uom,
                "unit_price": item.unit_price,
                "discount": item.discount,
                "gst": item.gst,
                "total_amount": item.total_amount if item.total_amount is not None else line_total(item),
            }
        )
    total = draft.total_amount
    if total is None:
        total = round(sum(i["total_amount"] for i in items), 2)

    header = draft.model_dump(exclude={"vendor_name", "line_items", "total_amount"}, exclude_none=True)
    header["vendor_name_snap"] = draft.vendor_name
    header["total_amount"] = total

    def work(tx: TransactionClient) -> PurchaseOrder:
        if draft.vendor_id and draft.vendor_name is None and draft.gstin is None and draft.billing_address is None:
            vendor = tx.vendors.find_unique_or_throw({"id": draft.vendor_id})
            header["vendor_name_snap"] = vendor.name
            header["gstin"] = vendor.gstin
            header["billing_address"] = vendor.address

        po = tx.purchase_orders.create({**header, "line_items": {"create": items}}, include={"line_items": True})
        record_audit(tx, "CREATE", "PurchaseOrder", po.id, f"PO {po.po_number}")
        return po

    return client.transaction(work)


def delete_purchase_order(client: Client, po_id: str) -> PurchaseOrder:
    """Delete an order with its line items. Assets received against it stay, unlinked."""

    def work(tx: TransactionClient) -> PurchaseOrder:
        tx.purchase_orders.find_unique_or_throw({"id": po_id})
        tx.line_items.delete_many({"purchase_order_id": po_id})
        po = tx.purchase_orders.delete({"id": po_id})
        record_audit(tx, "DELETE", "PurchaseOrder", po.id, f"PO {po.po_number}")
        return po

    return client.transaction(work)


def receive_items(client: Client, po_id: str, payload: ReceivePayload) -> PurchaseOrder:
    def work(tx: TransactionClient) -> PurchaseOrder:
        po = tx.purchase_orders.find_unique_or_throw({"id": po_id})
        received = 0
        for item in payload.items:
            line = tx.line_items.find_unique_or_throw({"id": item.line_item_id})
            if line.purchase_order_id != po.id:
                raise ServiceError(f"line item {line.id} does not belong to PO {po.po_number}")
            if item.quantity <= 0:
                raise ServiceError(f"line {line.sr_no}: received quantity must be positive")
            if line.received_qty + item.quantity > line.quantity:
                raise ServiceError(
                    f"line {line.sr_no}: receiving {item.quantity} exceeds the {line.quantity - line.received_qty} still open"
                )
            serials = [s.strip() for s in item.serials if s and s.strip()]
            if len(serials) > item.quantity:
                raise ServiceError(f"line {line.sr_no}: {len(serials)} serials for {item.quantity} units")

            tx.line_items.update({"id": line.id}, {"received_qty": {"increment": item.quantity}})
            for serial in serials:
                tx.assets.create(
                    {
                        "sub_category_id": item.sub_category_id,
                        "properties": {"name": line.product_name, "serial": serial, "po_ref": po.id},
                        "status": ASSET_ACTIVE,
                        "purchase_order_id": po.id,
                    }
                )
            received += item.quantity

        lines = tx.line_items.find_many({"purchase_order_id": po.id})
        status = PO_COMPLETED if all(li.received_qty >= li.quantity for li in lines) else PO_PARTIAL
        updated = tx.purchase_orders.update({"id": po.id}, {"status": status}, include={"line_items": True})
        record_audit(tx, "RECEIVE", "PurchaseOrder", po.id, f"received={received} status={status}")
        return updated

    return client.transaction(work)


# ---------- Maintenance ----------
def list_maintenance_records(client: Client) -> list[MaintenanceRecord]:
    return client.maintenance_records.find_many(
        order_by={"created_at": "desc"},
        include={"asset": {"include": {"sub_category": {"include": {"category": True}}}}},
    )


def report_issue(client: Client, report: IssueReport) -> MaintenanceRecord:
    def work(tx: TransactionClient) -> MaintenanceRecord:
        asset = tx.assets.find_unique_or_throw({"id": report.asset_id})
        record = tx.maintenance_records.create(
            {
                "asset_id": asset.id,
                "issue_type": report.issue_type,
                "description": report.description,
                "reported_by": report.reported_by,
                "status": RECORD_OPEN,
            }
        )
        tx.assets.update({"id": asset.id}, {"status": ASSET_IN_REPAIR})
        record_audit(tx, "CREATE", "MaintenanceRecord", record.id, report.issue_type)
        return record

    return client.transaction(work)


def resolve_maintenance_record(client: Client, record_id: str, cost: float) -> MaintenanceRecord:
    if cost < 0:
        raise ServiceError("cost must not be negative")

    def work(tx: TransactionClient) -> MaintenanceRecord:
        record = tx.maintenance_records.find_unique_or_throw({"id": record_id})
        if record.status == RECORD_CLOSED:
            raise ServiceError("maintenance record is already closed")
        resolved = tx.maintenance_records.update(
            {"id": record.id},
            {"status": RECORD_CLOSED, "cost": cost, "resolved_date": utcnow()},
        )
        tx.assets.update({"id": record.asset_id}, {"status": ASSET_ACTIVE})
        record_audit(tx, "RESOLVE", "MaintenanceRecord", record.id, f"cost={cost}")
        return resolved

    return client.transaction(work)


# ---------- User ----------
def _public(user) -> UserPublic:
    return UserPublic(**{k: getattr(user, k) for k in UserPublic.model_fields})


def check_init(client: Client) -> bool:
    return client.users.count() > 0


def list_users(client: Client) -> list[UserPublic]:
    users = client.users.find_many(order_by={"username": "asc"}, omit={"password": True})
    return [_public(u) for u in users]


def register_user(client: Client, body: RegisterIn, *, trusted: bool = False) -> UserPublic:
    """The first account becomes ADMIN.

    Later self-registrations are always USER; only ``trusted`` callers (the
    operator CLI) may ask for another role.
    """
    username = (body.username or "").strip()
    if not username or not body.password:
        raise ServiceError("username and password are required")
    hashed = hash_password(body.password)

    def work(tx: TransactionClient) -> UserPublic:
        if tx.users.count() == 0:
            role = "ADMIN"
        else:
            role = (body.role if trusted else None) or "USER"
        user = tx.users.create(
            {"username": username, "password": hashed, "name": body.name, "role": role},
            omit={"password": True},
        )
        record_audit(tx, "REGISTER", "User", user.id, f"{username} ({role})")
        return _public(user)

    return client.transaction(work)


def login_user(client: Client, body: LoginIn) -> UserPublic:
    user = client.users.find_unique({"username": body.username}, omit={"password": False})
    if user is None or not verify_password(body.password, user.password):
        raise AuthenticationFailed("invalid username or password")
    return _public(user)


def change_password(client: Client, user_id: str, current_password: str, new_password: str) -> UserPublic:
    if not new_password:
        raise ServiceError("password is empty")
    hashed = hash_password(new_password)

    def work(tx: TransactionClient) -> UserPublic:
        current = tx.users.find_unique_or_throw({"id": user_id}, omit={"password": False})
        if not verify_password(current_password, current.password):
            raise AuthenticationFailed("current password is incorrect")
        user = tx.users.update({"id": user_id}, {"password": hashed}, omit={"password": True})
        record_audit(tx, "UPDATE", "User", user.id, "password changed")
        return _public(user)

    return client.transaction(work)


# ---------- CSV import / export ----------
def import_assets(client: DataClient, rows: list[dict[str, str]]) -> ImportReport:
    """
    rows: [{"category": "...", "subcategory": "...", "name": "...", "serial": "...", ...}]

    Each row is written in its own transaction; a bad row is reported and skipped.
    """
    total = 0
    success = 0
    errors: list[str] = []

    for idx, r in enumerate(rows, start=2):
        if not any((v or "").strip() for v in r.values()):
            continue
        total += 1

        category_name = (r.get("category") or "").strip()
        if not category_name:
            errors.append(f"row {idx}: missing category")
            continue
        properties = {
            k: v.strip()
            for k, v in r.items()
            if k and k not in ("category", "subcategory") and v and v.strip()
        }

        def work(tx: TransactionClient) -> Asset:
            sub = get_or_create_sub_category(tx, category_name, r.get("subcategory"))
            return tx.assets.create(
                {"sub_category_id": sub.id, "properties": properties, "status": ASSET_ACTIVE}
            )

        try:
            client.transaction(work)
        except DataAccessError as exc:
            errors.append(f"row {idx}: {exc}")
            continue
        success += 1

    if success:
        record_audit(client, "CREATE", "Asset", None, f"imported {success} assets")
    logger.info("asset import total=%s success=%s errors=%s", total, success, len(errors))
    return ImportReport(total=total, success=success, errors=errors)


def _priority(key: str) -> tuple:
    lowered = key.lower()
    if lowered in EXPORT_PRIORITY:
        return (0, EXPORT_PRIORITY.index(lowered), "")
    return (1, 0, key)


def export_asset_rows(client: Client) -> tuple[list[tuple[str, str]], list[dict]]:
    """Flatten every asset for export.

    Returns ``(columns, rows)`` where columns are ``(header, key)`` pairs: the
    fixed columns first, then one column per property key found on any asset
    (``name``, ``serial``, ``serial no`` and ``model`` lead, the rest sorted).
    """
    assets = client.assets.find_many(
        order_by={"created_at": "asc"},
        include={"sub_category": {"include": {"category": True}}},
    )

    keys: set[str] = set()
    for a in assets:
        if isinstance(a.properties, dict):
            keys.update(a.properties)

    columns = [
        ("Asset ID", "id"),
        ("Category", "category"),
        ("SubCategory", "subcategory"),
        ("Status", "status"),
        ("Last Updated", "updated"),
    ]
    columns += [(k.upper(), k) for k in sorted(keys, key=_priority)]

    rows = []
    for a in assets:
        props = a.properties if isinstance(a.properties, dict) else {}
        sub = a.sub_category
        rows.append(
            {
                **{k: "" if v is None else str(v) for k, v in props.items()},
                "id": a.id,
                "category": sub.category.name if sub and sub.category else "",
                "subcategory": sub.name if sub else "",
                "status": a.status,
                "updated": a.updated_at.date().isoformat(),
            }
        )
    return columns, rows


def _parse_date(value: str) -> datetime:
    value = (value or "").strip()
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ServiceError(f"unrecognised date {value!r}")


def _number(value: Optional[str], default: float) -> float:
    try:
        return float((value or "").strip())
    except ValueError:
        return default


def import_purchase_orders(client: DataClient, rows: list[dict[str, str]]) -> ImportReport:
    """
    rows: [{"po number": "...", "date": "...", "vendor": "...", "product": "...", "qty": "...", "price": "...", ...}]

    Rows sharing a PO number become one order; PO numbers already stored are skipped.
    """
    if rows:
        missing = {"po number", "vendor", "product"} - set(rows[0])
        if missing:
            raise ServiceError(f"missing columns: {', '.join(sorted(missing))}")

    errors: list[str] = []
    grouped: dict[str, PurchaseOrderDraft] = {}
    for idx, r in enumerate(rows, start=2):
        po_number = (r.get("po number") or "").strip()
        if not po_number:
            continue
        draft = grouped.get(po_number)
        if draft is None:
            try:
                date = _parse_date(r.get("date", ""))
            except ServiceError as exc:
                errors.append(f"row {idx}: {exc}")
                continue
            draft = PurchaseOrderDraft(
                po_number=po_number,
                date=date,
                vendor_name=(r.get("vendor") or "").strip() or None,
                gstin=(r.get("gstin") or "").strip() or None,
            )
            grouped[po_number] = draft

        gst_text = (r.get("gst") or "").strip()
        draft.line_items.append(
            LineItemDraft(
                sr_no=len(draft.line_items) + 1,
                product_name=(r.get("product") or "").strip(),
                quantity=max(1, int(_number(r.get("qty"), 1))),
                uom=(r.get("uom") or "").strip() or DEFAULT_UOM,
                unit_price=_number(r.get("price"), 0.0),
                gst=_number(gst_text, DEFAULT_GST) if gst_text else DEFAULT_GST,
            )
        )

    created = 0
    for po_number, draft in grouped.items():
        if client.purchase_orders.find_unique({"po_number": po_number}) is not None:
            errors.append(f"PO {po_number}: already exists, skipped")
            continue
        try:
            create_purchase_order(client, draft)
        except (DataAccessError, ServiceError) as exc:
            errors.append(f"PO {po_number}: {exc}")
            continue
        created += 1

    logger.info("po import total=%s created=%s errors=%s", len(grouped), created, len(errors))
    return ImportReport(total=len(grouped), success=created, errors=errors)


# ---------- Backup ----------
def backup_database(client: DataClient, dest: Union[str, Path]) -> Path:
    """Copy a SQLite store to ``dest`` with SQLite's online backup."""
    if client.engine.dialect.name != "sqlite" or client.engine.url.database in (None, "", ":memory:"):
        raise ServiceError("backup is only available for file-based SQLite stores")

    dest = Path(dest).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)

    with client.engine.connect() as conn:
        source = conn.connection.driver_connection
        target = sqlite3.connect(dest.as_posix())
        try:
            source.backup(target)
        finally:
            target.close()

    record_audit(client, "BACKUP", "Database", None, dest.as_posix())
    logger.info("backup written path=%s", dest)
    return dest
