import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Sequence,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def user_fk(nullable: bool = True) -> Mapped[Optional[uuid.UUID]]:
    return mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=nullable)


# =====================
# Users, positions and permissions
# =====================

class Position(Base):
    __tablename__ = "positions"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # e.g. "Admin 1", "Admin 2", "Super Admin"
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    grants = relationship("PositionPermission", back_populates="position", cascade="all, delete-orphan")
    users = relationship("User", back_populates="position")


class Permission(Base):
    """Static (module, action) capability, e.g. (form_records, delete)."""
    __tablename__ = "permissions"

    id: Mapped[uuid.UUID] = uuid_pk()
    module: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))

    __table_args__ = (
        UniqueConstraint("module", "action", name="uq_permission_module_action"),
    )


class PositionPermission(Base):
    __tablename__ = "position_permissions"

    id: Mapped[uuid.UUID] = uuid_pk()
    position_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("positions.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False)
    scope: Mapped[str] = mapped_column(String(20), default="global", nullable=False)  # global|branch

    position = relationship("Position", back_populates="grants")
    permission = relationship("Permission")

    __table_args__ = (
        UniqueConstraint("position_id", "permission_id", name="uq_position_permission"),
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    firstname: Mapped[Optional[str]] = mapped_column(String(100))
    lastname: Mapped[Optional[str]] = mapped_column(String(100))
    address: Mapped[Optional[str]] = mapped_column(String(255))  # branch the user belongs to
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    position_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("positions.id", ondelete="SET NULL"))
    role: Mapped[str] = mapped_column(String(20), default="user", nullable=False)  # legacy flat role: admin|user
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    position = relationship("Position", back_populates="users")

    @property
    def full_name(self) -> str:
        name = f"{self.firstname or ''} {self.lastname or ''}".strip()
        return name or self.username or self.email


class PasswordReset(Base):
    __tablename__ = "password_resets"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"))
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


# =====================
# Form record building blocks
# =====================

class LifecycleMixin:
    """Ownership and soft-delete columns shared by every form table."""

    id: Mapped[uuid.UUID] = uuid_pk()
    created_by: Mapped[Optional[uuid.UUID]] = user_fk()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)
    updated_by: Mapped[Optional[uuid.UUID]] = user_fk()
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)  # null = active
    deleted_by: Mapped[Optional[uuid.UUID]] = user_fk()

    # Image columns holding storage URLs
    __signature_fields__: tuple = ()


class ApprovalMixin:
    """Two-level approval columns (branch admin, then regional admin)."""

    approval_status: Mapped[str] = mapped_column(String(30), default="pending_level_1", nullable=False)
    level_1_approved_by: Mapped[Optional[uuid.UUID]] = user_fk()
    level_1_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    level_1_notes: Mapped[Optional[str]] = mapped_column(Text)
    level_2_approved_by: Mapped[Optional[uuid.UUID]] = user_fk()
    level_2_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    level_2_notes: Mapped[Optional[str]] = mapped_column(Text)


class ServiceReportMixin(LifecycleMixin):
    """Columns common to the service, commissioning and teardown reports."""

    job_order: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    customer: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    report_date: Mapped[Optional[date]] = mapped_column(Date)
    remarks: Mapped[Optional[str]] = mapped_column(Text)

    attending_technician: Mapped[Optional[str]] = mapped_column(String(255))
    attending_technician_signature: Mapped[Optional[str]] = mapped_column(String(1024))

    # Signatories: only the designated user may flip the *_checked flag
    noted_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    noted_by_user_id: Mapped[Optional[uuid.UUID]] = user_fk()
    noted_by_checked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    noted_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))
    approved_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    approved_by_user_id: Mapped[Optional[uuid.UUID]] = user_fk()
    approved_by_checked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approved_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))

    __signature_fields__ = ("attending_technician_signature", "noted_by_signature", "approved_by_signature")


# =====================
# Approval-bearing forms
# =====================

class JobOrderRequest(LifecycleMixin, ApprovalMixin, Base):
    __tablename__ = "job_order_request_form"

    jo_number: Mapped[Optional[int]] = mapped_column(Integer, Sequence("job_order_request_form_jo_number_seq"), unique=True)
    shop_field_jo_number: Mapped[Optional[str]] = mapped_column(String(20), unique=True)  # JO-0001
    date_prepared: Mapped[Optional[date]] = mapped_column(Date)
    full_customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    location_of_unit: Mapped[Optional[str]] = mapped_column(String(255))
    contact_person: Mapped[Optional[str]] = mapped_column(String(255))
    telephone_numbers: Mapped[Optional[str]] = mapped_column(String(100))
    equipment_model: Mapped[Optional[str]] = mapped_column(String(255))
    equipment_number: Mapped[Optional[str]] = mapped_column(String(100))
    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    esn: Mapped[Optional[str]] = mapped_column(String(100))
    complaints: Mapped[Optional[str]] = mapped_column(Text)
    work_to_be_done: Mapped[Optional[str]] = mapped_column(Text)
    preferred_service_date: Mapped[Optional[date]] = mapped_column(Date)
    charges_absorbed_by: Mapped[Optional[str]] = mapped_column(String(255))
    requested_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    requested_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))
    approved_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    approved_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))
    verified_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    verified_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))
    estimated_repair_days: Mapped[Optional[int]] = mapped_column(Integer)
    technicians_involved: Mapped[Optional[str]] = mapped_column(Text)
    date_job_started: Mapped[Optional[date]] = mapped_column(Date)
    date_job_completed_closed: Mapped[Optional[date]] = mapped_column(Date)
    parts_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    labor_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    other_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    total_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100))
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(String(30), default="Pending")

    __signature_fields__ = ("requested_by_signature", "approved_by_signature", "verified_by_signature")


class DailyTimeSheet(LifecycleMixin, ApprovalMixin, Base):
    __tablename__ = "daily_time_sheet"

    job_number: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    customer: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(255))
    work_date: Mapped[Optional[date]] = mapped_column(Date)
    total_manhours: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2))
    performed_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    performed_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))
    approved_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    approved_by_signature: Mapped[Optional[str]] = mapped_column(String(1024))
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(String(30), default="Pending")

    __signature_fields__ = ("performed_by_signature", "approved_by_signature")


# =====================
# Service reports
# =====================

class DeutzCommissioningReport(ServiceReportMixin, Base):
    __tablename__ = "deutz_commissioning_report"

    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    engine_serial_no: Mapped[Optional[str]] = mapped_column(String(100))
    commissioning_date: Mapped[Optional[date]] = mapped_column(Date)
    running_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 1))


class DeutzServiceReport(ServiceReportMixin, Base):
    __tablename__ = "deutz_service_report"

    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    engine_serial_no: Mapped[Optional[str]] = mapped_column(String(100))
    running_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 1))
    service_performed: Mapped[Optional[str]] = mapped_column(Text)


class EngineInspectionReceivingReport(ServiceReportMixin, Base):
    __tablename__ = "engine_inspection_receiving_report"

    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    esn: Mapped[Optional[str]] = mapped_column(String(100))
    received_date: Mapped[Optional[date]] = mapped_column(Date)
    incoming_condition: Mapped[Optional[str]] = mapped_column(Text)


class SubmersiblePumpCommissioningReport(ServiceReportMixin, Base):
    __tablename__ = "submersible_pump_commissioning_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    pump_serial_no: Mapped[Optional[str]] = mapped_column(String(100))
    motor_kw: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))


class SubmersiblePumpServiceReport(ServiceReportMixin, Base):
    __tablename__ = "submersible_pump_service_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    pump_serial_no: Mapped[Optional[str]] = mapped_column(String(100))
    service_performed: Mapped[Optional[str]] = mapped_column(Text)


class SubmersiblePumpTeardownReport(ServiceReportMixin, Base):
    __tablename__ = "submersible_pump_teardown_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    pump_serial_no: Mapped[Optional[str]] = mapped_column(String(100))
    findings: Mapped[Optional[str]] = mapped_column(Text)


class ElectricSurfacePumpCommissioningReport(ServiceReportMixin, Base):
    __tablename__ = "electric_surface_pump_commissioning_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    motor_model: Mapped[Optional[str]] = mapped_column(String(255))
    motor_kw: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))


class ElectricSurfacePumpServiceReport(ServiceReportMixin, Base):
    __tablename__ = "electric_surface_pump_service_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    motor_model: Mapped[Optional[str]] = mapped_column(String(255))
    service_performed: Mapped[Optional[str]] = mapped_column(Text)


class ElectricSurfacePumpTeardownReport(ServiceReportMixin, Base):
    __tablename__ = "electric_surface_pump_teardown_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    motor_model: Mapped[Optional[str]] = mapped_column(String(255))
    findings: Mapped[Optional[str]] = mapped_column(Text)


class EngineSurfacePumpCommissioningReport(ServiceReportMixin, Base):
    __tablename__ = "engine_surface_pump_commissioning_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    esn: Mapped[Optional[str]] = mapped_column(String(100))


class EngineSurfacePumpServiceReport(ServiceReportMixin, Base):
    __tablename__ = "engine_surface_pump_service_report"

    pump_model: Mapped[Optional[str]] = mapped_column(String(255))
    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    service_performed: Mapped[Optional[str]] = mapped_column(Text)


class EngineTeardownReport(ServiceReportMixin, Base):
    __tablename__ = "engine_teardown_reports"

    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    esn: Mapped[Optional[str]] = mapped_column(String(100))
    findings: Mapped[Optional[str]] = mapped_column(Text)


class ComponentsTeardownMeasuringReport(ServiceReportMixin, Base):
    __tablename__ = "components_teardown_measuring_report"

    engine_model: Mapped[Optional[str]] = mapped_column(String(255))
    component: Mapped[Optional[str]] = mapped_column(String(255))
    measurements: Mapped[Optional[dict]] = mapped_column(JSON)


# =====================
# Approvals, attachments, audit
# =====================

class Approval(ApprovalMixin, Base):
    """Two-level approval for a submitted service report."""
    __tablename__ = "approvals"

    id: Mapped[uuid.UUID] = uuid_pk()
    report_table: Mapped[str] = mapped_column(String(100), nullable=False)
    report_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    requested_by: Mapped[Optional[uuid.UUID]] = user_fk()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("report_table", "report_id", name="uq_approval_report"),
        Index("idx_approval_status", "approval_status"),
    )


class FormAttachment(Base):
    __tablename__ = "form_attachments"

    id: Mapped[uuid.UUID] = uuid_pk()
    form_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    file_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_url: Mapped[Optional[str]] = mapped_column(String(2048))
    file_name: Mapped[Optional[str]] = mapped_column(String(255))
    file_type: Mapped[Optional[str]] = mapped_column(String(100))
    file_size: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    created_by: Mapped[Optional[uuid.UUID]] = user_fk()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("idx_attachment_record", "form_type", "record_id"),
    )


class AuditLog(Base):
    """Append-only audit log for every form mutation"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    table_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    record_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|STATUS_CHANGE|DELETE|RESTORE
    old_data: Mapped[Optional[dict]] = mapped_column(JSON)
    new_data: Mapped[Optional[dict]] = mapped_column(JSON)
    performed_by: Mapped[Optional[uuid.UUID]] = user_fk()
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # e.g. {decision, level}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_audit_record", "table_name", "record_id"),
        Index("idx_audit_actor", "performed_by", "performed_at"),
    )
