import json
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import String, DateTime, Text, ForeignKey, Integer, Float, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class JSONText(TypeDecorator):
    """Structured value in Python, plain text in the table.

    Strings are stored verbatim so callers may hand over pre-serialized text;
    anything else is dumped as JSON. Reads decode JSON and fall back to the raw
    text when it does not parse. The inner shape is never checked here.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return json.loads(value)
        except ValueError:
            return value


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetimes stored as naive UTC.

    Aware values are converted to UTC before binding; naive values are taken
    to be UTC already. Reads always come back tagged with ``timezone.utc``.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class UserORM(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    password: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default="USER")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class CategoryORM(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    sub_categories: Mapped[list["SubCategoryORM"]] = relationship(
        back_populates="category", passive_deletes="all"
    )


class SubCategoryORM(Base):
    __tablename__ = "sub_categories"
    __table_args__ = (
        UniqueConstraint("category_id", "slug", name="uq_sub_categories_category_id_slug"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str] = mapped_column(
        String, ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    field_definitions: Mapped[object] = mapped_column(JSONText, nullable=False, default="[]")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    category: Mapped[CategoryORM] = relationship(back_populates="sub_categories")
    assets: Mapped[list["AssetORM"]] = relationship(back_populates="sub_category", passive_deletes="all")


class AssetORM(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    sub_category_id: Mapped[str] = mapped_column(
        String, ForeignKey("sub_categories.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    properties: Mapped[object] = mapped_column(JSONText, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String, nullable=False, default="ACTIVE")
    purchase_order_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("purchase_orders.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    sub_category: Mapped[SubCategoryORM] = relationship(back_populates="assets")
    purchase_order: Mapped[Optional["PurchaseOrderORM"]] = relationship(back_populates="assets")
    maintenance_records: Mapped[list["MaintenanceRecordORM"]] = relationship(
        back_populates="asset", passive_deletes="all"
    )


class MaintenanceRecordORM(Base):
    __tablename__ = "maintenance_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    asset_id: Mapped[str] = mapped_column(
        String, ForeignKey("assets.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    issue_type: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="OPEN")
    reported_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    asset: Mapped[AssetORM] = relationship(back_populates="maintenance_records")


class VendorORM(Base):
    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    gstin: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    purchase_orders: Mapped[list["PurchaseOrderORM"]] = relationship(
        back_populates="vendor", passive_deletes="all"
    )


class PurchaseOrderORM(Base):
    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    po_number: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    vendor_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # copied from the vendor when the order is raised, never kept in sync
    vendor_name_snap: Mapped[str | None] = mapped_column(String, nullable=True)
    gstin: Mapped[str | None] = mapped_column(String, nullable=True)
    billing_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String, nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String, nullable=False, default="ISSUED")

    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    dept_name: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    request_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    action_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    request_type: Mapped[str | None] = mapped_column(String, nullable=True)
    prf_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    properties: Mapped[object] = mapped_column(JSONText, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    vendor: Mapped[VendorORM | None] = relationship(back_populates="purchase_orders")
    line_items: Mapped[list["LineItemORM"]] = relationship(
        back_populates="purchase_order", passive_deletes="all", order_by="LineItemORM.sr_no"
    )
    assets: Mapped[list[AssetORM]] = relationship(back_populates="purchase_order", passive_deletes="all")


class LineItemORM(Base):
    __tablename__ = "line_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    purchase_order_id: Mapped[str] = mapped_column(
        String, ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sr_no: Mapped[int] = mapped_column(Integer, nullable=False)
    product_name: Mapped[str] = mapped_column(String, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    uom: Mapped[str | None] = mapped_column(String, nullable=True)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False)
    discount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    gst: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    received_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    purchase_order: Mapped[PurchaseOrderORM] = relationship(back_populates="line_items")


class AuditLogORM(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # loose pointer: no foreign key, any entity type may appear here
    entity_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)
