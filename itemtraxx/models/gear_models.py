from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from db.base import Base


GEAR_STATUSES = (
    "available",
    "checked_out",
    "damaged",
    "lost",
    "in_repair",
    "retired",
    "in_studio_only",
)
TRACKED_STATUSES = frozenset({"damaged", "lost", "in_repair", "retired", "in_studio_only"})
UNFLAGGED_STATUSES = ("available", "checked_out")


class Gear(Base):
    __tablename__ = "gear"
    __table_args__ = (UniqueConstraint("tenant_id", "barcode", name="gear_tenant_barcode_key"),)

    id = Column(Uuid(as_uuid=False), primary_key=True)
    tenant_id = Column(Uuid(as_uuid=False), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    barcode = Column(String(64), nullable=False)
    serial_number = Column(String(64))
    status = Column(String(32), nullable=False, server_default="available")
    notes = Column(String(500))
    checked_out_by = Column(Uuid(as_uuid=False), ForeignKey("students.id"))
    checked_out_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True))


class Student(Base):
    __tablename__ = "students"

    id = Column(Uuid(as_uuid=False), primary_key=True)
    tenant_id = Column(Uuid(as_uuid=False), nullable=False, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    student_id = Column(String(64))
    email = Column(String(255))


class GearStatusHistory(Base):
    __tablename__ = "gear_status_history"

    id = Column(Uuid(as_uuid=False), primary_key=True)
    tenant_id = Column(Uuid(as_uuid=False), nullable=False, index=True)
    gear_id = Column(Uuid(as_uuid=False), nullable=False)
    status = Column(String(32), nullable=False)
    note = Column(Text)
    changed_at = Column(DateTime(timezone=True), server_default=func.now())
    changed_by = Column(Uuid(as_uuid=False))


class TenantPolicy(Base):
    __tablename__ = "tenant_policies"

    tenant_id = Column(Uuid(as_uuid=False), primary_key=True)
    checkout_due_hours = Column(Integer, nullable=False, server_default="72")
    escalation_level_1_hours = Column(Integer, server_default="120")
    escalation_level_2_hours = Column(Integer, server_default="168")
    escalation_level_3_hours = Column(Integer, server_default="240")
    updated_by = Column(Uuid(as_uuid=False))
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Uuid(as_uuid=False), primary_key=True)
    tenant_id = Column(Uuid(as_uuid=False))
    role = Column(String(32))
    auth_email = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AppRuntimeConfig(Base):
    __tablename__ = "app_runtime_config"

    key = Column(String(100), primary_key=True)
    value = Column(JSON)


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"
    __table_args__ = (UniqueConstraint("bucket_key", "window_start", name="rate_limit_bucket_window_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    bucket_key = Column(String(200), nullable=False)
    window_start = Column(Integer, nullable=False)
    request_count = Column(Integer, nullable=False, server_default="0")
