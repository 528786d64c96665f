"""
SQLAlchemy models for the back-office integration layer.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Integer, DateTime, Date, Numeric, Enum as SQLEnum, JSON, UniqueConstraint
from sqlalchemy.sql import func
from backoffice.database import Base
import enum
import uuid

# Enums
class SyncRunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

class SyncType(str, enum.Enum):
    B2B_PULL = "specialized-b2b-sync"
    PUSH = "specialized-sync"

# Models
class RemoteShipment(Base):
    """Shipment observed on the B2B portal. shipment_id is the portal's natural key."""
    __tablename__ = "spec_shipments"

    shipment_id = Column("shipment_id", String, primary_key=True)
    cust_po_number = Column("cust_po_number", String, nullable=True, index=True)
    ship_to = Column("ship_to", String, nullable=True)
    order_type = Column("order_type", String, nullable=True)
    date_shipped = Column("date_shipped", Date, nullable=True)
    shipped_total = Column("shipped_total", Numeric(12, 2), nullable=True)
    shipped_qty = Column("shipped_qty", Integer, nullable=True)
    tracking_url = Column("tracking_url", String, nullable=True)
    currency_code = Column("currency_code", String(8), nullable=True)
    store = Column("store", String, nullable=True)
    org_id = Column("org_id", String, nullable=True)
    raw_data = Column("raw_data", JSON(none_as_null=True), nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class RemoteOrder(Base):
    __tablename__ = "spec_orders"

    order_id = Column("order_id", String, primary_key=True)
    order_number = Column("order_number", String, nullable=True, index=True)
    order_type = Column("order_type", String, nullable=True)
    order_date = Column("order_date", Date, nullable=True)
    order_status = Column("order_status", String, nullable=True)
    total_amount = Column("total_amount", Numeric(12, 2), nullable=True)
    currency_code = Column("currency_code", String(8), nullable=True)
    store = Column("store", String, nullable=True)
    org_id = Column("org_id", String, nullable=True)
    raw_data = Column("raw_data", JSON(none_as_null=True), nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class PendingOrder(Base):
    """Submitted-but-unconfirmed B2B orders; only arrive through the push sync."""
    __tablename__ = "spec_pending_orders"

    order_id = Column("order_id", String, primary_key=True)
    order_number = Column("order_number", String, nullable=True)
    order_type = Column("order_type", String, nullable=True)
    order_status = Column("order_status", String, nullable=True)
    total_amount = Column("total_amount", Numeric(12, 2), nullable=True)
    submitted_date = Column("submitted_date", Date, nullable=True)
    currency_code = Column("currency_code", String(8), nullable=True)
    raw_data = Column("raw_data", JSON(none_as_null=True), nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

class SyncRun(Base):
    """Append-only audit record, one per synchronization invocation."""
    __tablename__ = "sync_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sync_type = Column("sync_type", String(50), nullable=False)
    status = Column(SQLEnum(SyncRunStatus), default=SyncRunStatus.RUNNING, nullable=False)
    records_synced = Column("records_synced", Integer, default=0)
    error_message = Column("error_message", String, nullable=True)
    store_outcomes = Column("store_outcomes", JSON(none_as_null=True), nullable=True)
    started_at = Column("started_at", DateTime, nullable=False)
    completed_at = Column("completed_at", DateTime, nullable=True)

class InventoryItem(Base):
    """Local stock row: one product in one store."""
    __tablename__ = "inventory"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = Column("product_id", String(50), nullable=False, index=True)
    product_name = Column("product_name", String(200), nullable=True)
    store = Column("store", String(50), nullable=False)
    price = Column("price", Numeric(12, 2), nullable=True)
    quantity = Column("quantity", Integer, default=0)
    vendor_code = Column("vendor_code", String(50), nullable=True)
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("product_id", "store", name="inventory_product_store_unique"),)

class ProviderCredential(Base):
    """Encrypted credentials for an external system (erp, specialized_b2b)."""
    __tablename__ = "provider_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column("provider_id", String, nullable=False, unique=True, index=True)
    value_encrypted = Column("value_encrypted", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())
