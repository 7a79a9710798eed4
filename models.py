from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["ADMIN", "USER"]


class StrictIn(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------- User ----------
class UserIn(StrictIn):
    id: Optional[str] = None
    username: str
    password: str
    name: str
    role: Role = "USER"

class UserUpdate(StrictIn):
    username: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None
    role: Optional[Role] = None

class User(BaseModel):
    id: str
    username: str
    password: str
    name: str
    role: Role
    created_at: datetime
    updated_at: datetime


class UserPublic(BaseModel):
    id: str
    username: str
    name: str
    role: Role
    created_at: datetime
    updated_at: datetime


# ---------- Category / SubCategory ----------
class CategoryIn(StrictIn):
    id: Optional[str] = None
    name: str
    slug: str
    description: Optional[str] = None

class CategoryUpdate(StrictIn):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None

class Category(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    sub_categories: Optional[list[SubCategory]] = None


class SubCategoryIn(StrictIn):
    id: Optional[str] = None
    name: str
    slug: str
    category_id: str
    field_definitions: Any = None

class SubCategoryUpdate(StrictIn):
    name: Optional[str] = None
    slug: Optional[str] = None
    category_id: Optional[str] = None
    field_definitions: Any = None

class SubCategory(BaseModel):
    id: str
    name: str
    slug: str
    category_id: str
    field_definitions: Any = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    category: Optional[Category] = None
    assets: Optional[list[Asset]] = None


# ---------- Asset ----------
class AssetIn(StrictIn):
    id: Optional[str] = None
    sub_category_id: str
    properties: Any = None
    status: Optional[str] = None
    purchase_order_id: Optional[str] = None

class AssetUpdate(StrictIn):
    sub_category_id: Optional[str] = None
    properties: Any = None
    status: Optional[str] = None
    purchase_order_id: Optional[str] = None

class Asset(BaseModel):
    id: str
    sub_category_id: str
    properties: Any = Field(default_factory=dict)
    status: str = "ACTIVE"
    purchase_order_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    sub_category: Optional[SubCategory] = None
    purchase_order: Optional[PurchaseOrder] = None
    maintenance_records: Optional[list[MaintenanceRecord]] = None


# ---------- MaintenanceRecord ----------
class MaintenanceRecordIn(StrictIn):
    id: Optional[str] = None
    asset_id: str
    issue_type: str
    description: str
    cost: Optional[float] = None
    status: Optional[str] = None
    reported_by: Optional[str] = None
    resolved_date: Optional[datetime] = None

class MaintenanceRecordUpdate(StrictIn):
    asset_id: Optional[str] = None
    issue_type: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[float] = None
    status: Optional[str] = None
    reported_by: Optional[str] = None
    resolved_date: Optional[datetime] = None

class MaintenanceRecord(BaseModel):
    id: str
    asset_id: str
    issue_type: str
    description: str
    cost: float = 0.0
    status: str = "OPEN"
    reported_by: Optional[str] = None
    resolved_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    asset: Optional[Asset] = None


# ---------- Vendor ----------
class VendorIn(StrictIn):
    id: Optional[str] = None
    name: str
    gstin: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

class VendorUpdate(StrictIn):
    name: Optional[str] = None
    gstin: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

class Vendor(BaseModel):
    id: str
    name: str
    gstin: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    purchase_orders: Optional[list[PurchaseOrder]] = None


# ---------- PurchaseOrder / LineItem ----------
class PurchaseOrderIn(StrictIn):
    id: Optional[str] = None
    po_number: str
    date: datetime
    vendor_id: Optional[str] = None
    vendor_name_snap: Optional[str] = None
    gstin: Optional[str] = None
    billing_address: Optional[str] = None
    delivery_address: Optional[str] = None
    total_amount: float
    currency: Optional[str] = None
    status: Optional[str] = None
    terms_and_conditions: Optional[str] = None
    remarks: Optional[str] = None
    request_ref: Optional[str] = None
    dept_name: Optional[str] = None
    approved_by: Optional[str] = None
    request_date: Optional[datetime] = None
    action_date: Optional[datetime] = None
    request_type: Optional[str] = None
    prf_ref: Optional[str] = None
    properties: Any = None

class PurchaseOrderUpdate(StrictIn):
    po_number: Optional[str] = None
    date: Optional[datetime] = None
    vendor_id: Optional[str] = None
    vendor_name_snap: Optional[str] = None
    gstin: Optional[str] = None
    billing_address: Optional[str] = None
    delivery_address: Optional[str] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    terms_and_conditions: Optional[str] = None
    remarks: Optional[str] = None
    request_ref: Optional[str] = None
    dept_name: Optional[str] = None
    approved_by: Optional[str] = None
    request_date: Optional[datetime] = None
    action_date: Optional[datetime] = None
    request_type: Optional[str] = None
    prf_ref: Optional[str] = None
    properties: Any = None

class PurchaseOrder(BaseModel):
    id: str
    po_number: str
    date: datetime
    vendor_id: Optional[str] = None
    vendor_name_snap: Optional[str] = None
    gstin: Optional[str] = None
    billing_address: Optional[str] = None
    delivery_address: Optional[str] = None
    total_amount: float
    currency: str = "INR"
    status: str = "ISSUED"
    terms_and_conditions: Optional[str] = None
    remarks: Optional[str] = None
    request_ref: Optional[str] = None
    dept_name: Optional[str] = None
    approved_by: Optional[str] = None
    request_date: Optional[datetime] = None
    action_date: Optional[datetime] = None
    request_type: Optional[str] = None
    prf_ref: Optional[str] = None
    properties: Any = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    vendor: Optional[Vendor] = None
    line_items: Optional[list[LineItem]] = None
    assets: Optional[list[Asset]] = None


class LineItemIn(StrictIn):
    id: Optional[str] = None
    purchase_order_id: str
    sr_no: int
    product_name: str
    quantity: int
    uom: Optional[str] = None
    unit_price: float
    discount: Optional[float] = None
    gst: Optional[float] = None
    total_amount: float
    received_qty: Optional[int] = None

class LineItemUpdate(StrictIn):
    purchase_order_id: Optional[str] = None
    sr_no: Optional[int] = None
    product_name: Optional[str] = None
    quantity: Optional[int] = None
    uom: Optional[str] = None
    unit_price: Optional[float] = None
    discount: Optional[float] = None
    gst: Optional[float] = None
    total_amount: Optional[float] = None
    received_qty: Optional[int] = None

class LineItem(BaseModel):
    id: str
    purchase_order_id: str
    sr_no: int
    product_name: str
    quantity: int
    uom: Optional[str] = None
    unit_price: float
    discount: float = 0.0
    gst: float = 0.0
    total_amount: float
    received_qty: int = 0

    purchase_order: Optional[PurchaseOrder] = None


# ---------- AuditLog ----------
class AuditLogIn(StrictIn):
    id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: Optional[str] = None
    timestamp: Optional[datetime] = None

class AuditLogUpdate(StrictIn):
    action: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: Optional[str] = None
    timestamp: Optional[datetime] = None

class AuditLog(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime


for _model in (Category, SubCategory, Asset, MaintenanceRecord, Vendor, PurchaseOrder, LineItem):
    _model.model_rebuild()


# ---------- service payloads ----------
class CategoryDraft(BaseModel):
    name: str
    description: Optional[str] = None

class SubCategoryDraft(BaseModel):
    category_id: str
    name: str

class LineItemDraft(BaseModel):
    sr_no: Optional[int] = None
    product_name: str
    quantity: int = 1
    uom: Optional[str] = "Nos"
    unit_price: float = 0.0
    discount: float = 0.0
    gst: float = 18.0
    total_amount: Optional[float] = None

class PurchaseOrderDraft(BaseModel):
    po_number: str
    date: datetime
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    gstin: Optional[str] = None
    billing_address: Optional[str] = None
    delivery_address: Optional[str] = None
    total_amount: Optional[float] = None
    currency: str = "INR"
    terms_and_conditions: Optional[str] = None
    remarks: Optional[str] = None
    request_ref: Optional[str] = None
    dept_name: Optional[str] = None
    approved_by: Optional[str] = None
    request_date: Optional[datetime] = None
    action_date: Optional[datetime] = None
    request_type: Optional[str] = None
    prf_ref: Optional[str] = None
    line_items: list[LineItemDraft] = Field(default_factory=list)

class ReceiveItem(BaseModel):
    line_item_id: str
    sub_category_id: str
    quantity: int
    serials: list[str] = Field(default_factory=list)

class ReceivePayload(BaseModel):
    items: list[ReceiveItem]

class IssueReport(BaseModel):
    asset_id: str
    issue_type: str
    description: str
    reported_by: Optional[str] = None

class ResolveRequest(BaseModel):
    cost: float = 0.0

class RegisterIn(BaseModel):
    username: str
    password: str
    name: str
    role: Optional[Role] = None

class LoginIn(BaseModel):
    username: str
    password: str

class DashboardStats(BaseModel):
    asset_count: int
    po_count: int
    category_count: int

class ImportReport(BaseModel):
    total: int
    success: int
    errors: list[str]

class PasswordChange(BaseModel):
    current_password: str
    new_password: str
