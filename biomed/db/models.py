import enum
from datetime import date
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Boolean, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index, func
)
from sqlalchemy.orm import relationship, DeclarativeBase


class Base(DeclarativeBase):
    pass


# ─── ENUMS ───────────────────────────────────────────────

class TaskKind(str, enum.Enum):
    PM = "pm"
    CALIBRATION = "calibration"


class TaskStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS, TaskStatus.OVERDUE)
PRE_OVERDUE_STATUSES = (TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS)

NEXT_DUE_COLUMNS = {
    TaskKind.PM: "next_pm_date",
    TaskKind.CALIBRATION: "next_calibration_date",
}


class ChecklistValueType(str, enum.Enum):
    BOOLEAN = "boolean"
    TEXT = "text"
    NUMBER = "number"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    ENGINEER = "engineer"          # Biomedical engineer
    TECHNICIAN = "technician"
    VIEWER = "viewer"


class NotificationType(str, enum.Enum):
    ESCALATION = "escalation"
    TASK_OVERDUE = "task_overdue"
    GENERAL = "general"


# ─── MODELS ──────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255))
    role = Column(Enum(UserRole), nullable=False, default=UserRole.VIEWER)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())

    assigned_tasks = relationship("MaintenanceTask", back_populates="assignee")
    notifications = relationship("Notification", back_populates="user")


class Asset(Base):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True)
    name = Column(String(500), nullable=False)
    equipment_type = Column(String(255), nullable=False)
    manufacturer = Column(String(255))
    serial_number = Column(String(255))
    department = Column(String(255))
    purchase_date = Column(Date)
    next_pm_date = Column(Date)
    next_calibration_date = Column(Date)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    tasks = relationship("MaintenanceTask", back_populates="asset")

    def next_due_for(self, kind: TaskKind) -> date | None:
        return getattr(self, NEXT_DUE_COLUMNS[kind])


class MaintenanceTemplate(Base):
    __tablename__ = "maintenance_templates"
    __table_args__ = (
        UniqueConstraint("kind", "equipment_type", "manufacturer", name="uq_template_type_manufacturer"),
    )

    id = Column(Integer, primary_key=True)
    kind = Column(Enum(TaskKind), nullable=False, default=TaskKind.PM)
    equipment_type = Column(String(255), nullable=False)
    manufacturer = Column(String(255))  # NULL = generic for the equipment type
    frequency_months = Column(Integer, nullable=False)
    checklist_skeleton = Column(JSON, nullable=False, default=list)  # [{task, value_type, order}]
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class MaintenanceTask(Base):
    __tablename__ = "maintenance_tasks"

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    kind = Column(Enum(TaskKind), nullable=False)
    template_id = Column(Integer, ForeignKey("maintenance_templates.id"), nullable=True)
    scheduled_date = Column(Date, nullable=False)
    completed_date = Column(Date)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    vendor_id = Column(Integer)  # calibration vendor, owned by the vendor directory
    status = Column(Enum(TaskStatus), default=TaskStatus.SCHEDULED, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    asset = relationship("Asset", back_populates="tasks")
    template = relationship("MaintenanceTemplate")
    assignee = relationship("User", back_populates="assigned_tasks")
    checklist = relationship(
        "ChecklistItem", back_populates="task",
        order_by="ChecklistItem.order_index", cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_tasks_status_scheduled", "status", "scheduled_date"),
        Index("ix_tasks_asset_kind_status", "asset_id", "kind", "status"),
    )


class ChecklistItem(Base):
    """One checklist line. Exactly one result slot is used, picked by value_type."""

    __tablename__ = "checklist_items"

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("maintenance_tasks.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    value_type = Column(Enum(ChecklistValueType), nullable=False, default=ChecklistValueType.BOOLEAN)
    order_index = Column(Integer, default=0)
    result_boolean = Column(Boolean)
    result_text = Column(Text)
    result_number = Column(Float)
    notes = Column(Text)

    task = relationship("MaintenanceTask", back_populates="checklist")

    @property
    def result(self):
        if self.value_type == ChecklistValueType.BOOLEAN:
            return self.result_boolean
        if self.value_type == ChecklistValueType.NUMBER:
            return self.result_number
        return self.result_text


class EscalationRule(Base):
    __tablename__ = "escalation_rules"

    id = Column(Integer, primary_key=True)
    entity_type = Column(Enum(TaskKind), nullable=False)
    days_overdue = Column(Integer, nullable=False)
    escalation_level = Column(Integer, nullable=False)
    notify_user_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_rules_entity_active", "entity_type", "is_active"),
    )


class EscalationRecord(Base):
    """Existence of a row means the entity was already escalated at this level."""

    __tablename__ = "escalation_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "escalation_level", name="uq_escalation_entity_level"),
    )

    id = Column(Integer, primary_key=True)
    entity_type = Column(Enum(TaskKind), nullable=False)
    entity_id = Column(Integer, nullable=False)
    escalation_level = Column(Integer, nullable=False)
    rule_id = Column(Integer, ForeignKey("escalation_rules.id", ondelete="SET NULL"))
    days_overdue = Column(Integer)
    notified_user_ids = Column(JSON, default=list)
    created_at = Column(DateTime, default=func.now())


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(500), nullable=False)
    text = Column(Text)
    entity_type = Column(String(50))  # pm, calibration, asset
    entity_id = Column(Integer)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=func.now())

    user = relationship("User", back_populates="notifications")

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer)
    old_value = Column(JSON)
    new_value = Column(JSON)
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
    )
