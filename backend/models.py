# models.py - Database models for FabTrack
# - UUID string primary keys everywhere
# - Quote version chains (quote_reference + version_number + is_latest_version)
# - Business entities carry an audit version counter (current_version)
# - Three append-only history tables sharing one column set

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Numeric,
    Enum as SQLEnum, ForeignKey, Text, Index,
)
from sqlalchemy.orm import declarative_base, declared_attr, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"


class QuoteStatus(str, PyEnum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    CONVERTED = "CONVERTED"


class OrderStatus(str, PyEnum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    IN_PRODUCTION = "IN_PRODUCTION"
    ON_HOLD = "ON_HOLD"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class JobStatus(str, PyEnum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class HistoryEntityType(str, PyEnum):
    QUOTE = "QUOTE"
    ORDER = "ORDER"
    JOB = "JOB"
    UNKNOWN = "UNKNOWN"


# ============================================================
# USERS & CUSTOMERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.STAFF, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    contact_person = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Material(Base):
    __tablename__ = "materials"

    id = Column(String, primary_key=True, default=new_uuid)
    code = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    unit = Column(String, default="each")
    unit_cost = Column(Numeric(12, 2), default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class CompanySettings(Base):
    __tablename__ = "company_settings"

    id = Column(String, primary_key=True, default=new_uuid)
    company_name = Column(String, nullable=True)
    quote_reference_prefix = Column(String, default="QR", nullable=False)
    last_quote_reference_seq = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# QUOTES (version chains)
# ============================================================

class Quote(Base):
    __tablename__ = "quotes"

    id = Column(String, primary_key=True, default=new_uuid)
    quote_reference = Column(String, nullable=False, index=True)
    version_number = Column(Integer, default=1, nullable=False)
    is_latest_version = Column(Boolean, default=True, nullable=False)
    parent_quote_id = Column(String, ForeignKey("quotes.id"), nullable=True)
    change_reason = Column(Text, nullable=True)
    quote_number = Column(String, unique=True, nullable=False)

    customer_id = Column(String, ForeignKey("customers.id"), nullable=False, index=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(SQLEnum(QuoteStatus), default=QuoteStatus.DRAFT, nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    customer_reference = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    total_amount = Column(Numeric(12, 2), default=0)

    current_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    customer = relationship("Customer")
    created_by = relationship("User", foreign_keys=[created_by_id])
    parent_quote = relationship("Quote", remote_side=[id])
    line_items = relationship(
        "QuoteLineItem", back_populates="quote",
        cascade="all, delete-orphan", order_by="QuoteLineItem.position",
    )
    documents = relationship("Document", foreign_keys="Document.quote_id")

    __table_args__ = (
        Index("idx_quote_reference_version", "quote_reference", "version_number", unique=True),
        Index("idx_quote_reference_latest", "quote_reference", "is_latest_version"),
    )


class QuoteLineItem(Base):
    __tablename__ = "quote_line_items"

    id = Column(String, primary_key=True, default=new_uuid)
    quote_id = Column(String, ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False, index=True)
    material_id = Column(String, ForeignKey("materials.id"), nullable=True)
    position = Column(Integer, default=0, nullable=False)
    description = Column(String, nullable=False)
    quantity = Column(Numeric(12, 3), default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), default=0, nullable=False)

    quote = relationship("Quote", back_populates="line_items")
    material = relationship("Material")


# ============================================================
# ORDERS & JOBS
# ============================================================

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_uuid)
    project_title = Column(String, nullable=False)
    quote_ref = Column(String, nullable=True)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.DRAFT, nullable=False)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False, index=True)
    source_quote_id = Column(String, ForeignKey("quotes.id"), nullable=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    project_owner_id = Column(String, ForeignKey("users.id"), nullable=True)
    subtotal = Column(Numeric(12, 2), default=0)
    tax_amount = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)
    customer_reference = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    current_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    customer = relationship("Customer")
    created_by = relationship("User", foreign_keys=[created_by_id])
    project_owner = relationship("User", foreign_keys=[project_owner_id])
    documents = relationship("Document", foreign_keys="Document.order_id")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=new_uuid)
    job_number = Column(String, nullable=True, unique=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(JobStatus), default=JobStatus.DRAFT, nullable=False)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=True, index=True)

    current_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    customer = relationship("Customer")
    materials = relationship("JobMaterial", back_populates="job", cascade="all, delete-orphan")
    documents = relationship("Document", foreign_keys="Document.job_id")


class JobMaterial(Base):
    __tablename__ = "job_materials"

    id = Column(String, primary_key=True, default=new_uuid)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    material_id = Column(String, ForeignKey("materials.id"), nullable=False)
    quantity_needed = Column(Numeric(12, 3), default=1, nullable=False)
    unit_cost = Column(Numeric(12, 2), nullable=True)

    job = relationship("Job", back_populates="materials")
    material = relationship("Material")


# ============================================================
# DOCUMENTS (linked to any of quote / order / job)
# ============================================================

class Document(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    file_hash = Column(String(64), nullable=False)
    storage_path = Column(String, nullable=False)
    category = Column(String, nullable=True)
    quote_id = Column(String, ForeignKey("quotes.id"), nullable=True, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=True, index=True)
    uploaded_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    uploaded_by_user = relationship("User", foreign_keys=[uploaded_by])


# ============================================================
# HISTORY (append-only, never updated or deleted)
# ============================================================

class HistoryColumnsMixin:
    """Columns shared by every history table."""

    id = Column(String, primary_key=True, default=new_uuid)
    change_type = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False)
    status = Column(String, nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    # A user id, or the literal "system" for unattended changes
    changed_by = Column(String, nullable=False, default="system", index=True)
    change_reason = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    @declared_attr
    def changed_by_user(cls):
        return relationship(
            "User",
            primaryjoin=f"foreign({cls.__name__}.changed_by) == User.id",
            viewonly=True,
            lazy="selectin",
        )


class QuoteHistory(HistoryColumnsMixin, Base):
    __tablename__ = "quote_history"

    quote_id = Column(String, ForeignKey("quotes.id"), nullable=False, index=True)


class OrderHistory(HistoryColumnsMixin, Base):
    __tablename__ = "order_history"

    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    customer_approved = Column(Boolean, nullable=True)
    customer_signature = Column(Text, nullable=True)
    approval_timestamp = Column(DateTime(timezone=True), nullable=True)


class JobHistory(HistoryColumnsMixin, Base):
    __tablename__ = "job_history"

    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    material_changes = Column(JSON, nullable=True)
    progress_notes = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=True)
