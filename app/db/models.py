from typing import List, Optional
from datetime import datetime
import uuid
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    func,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


# Enums
class ChannelType(enum.Enum):
    MAIL = "mail"
    SMS = "sms"
    PUSH = "push"
    DATABASE = "database"


class ScheduledNotificationStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class DeliveryStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


# Directory
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String(320), unique=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    phone_number: Mapped[Optional[str]] = mapped_column(String(32))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    roles: Mapped[List["UserRole"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    class_memberships: Mapped[List["ClassMembership"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    notification_preferences: Mapped[List["NotificationPreference"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (
        Index("idx_users_username", "username"),
        Index("idx_users_is_active", "is_active"),
    )


class Role(Base, AuditMixin):
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    members: Mapped[List["UserRole"]] = relationship(
        back_populates="role", cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (Index("idx_roles_name", "name"),)


class UserRole(Base, AuditMixin):
    __tablename__ = "user_roles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="roles")
    role: Mapped["Role"] = relationship(back_populates="members")

    # Constraints
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
        Index("idx_user_roles_role_id", "role_id"),
    )


class SchoolClass(Base, AuditMixin):
    __tablename__ = "school_classes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Relationships
    memberships: Mapped[List["ClassMembership"]] = relationship(
        back_populates="school_class", cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (Index("idx_school_classes_code", "code"),)


class ClassMembership(Base, AuditMixin):
    __tablename__ = "class_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    class_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("school_classes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    joined_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    left_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    school_class: Mapped["SchoolClass"] = relationship(back_populates="memberships")
    user: Mapped["User"] = relationship(back_populates="class_memberships")

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "left_at IS NULL OR joined_at IS NULL OR left_at > joined_at",
            name="ck_class_memberships_left_after_joined",
        ),
        Index("idx_class_memberships_class_id", "class_id"),
        Index("idx_class_memberships_user_id", "user_id"),
    )


class NotificationPreference(Base, AuditMixin):
    """Per-user channel opt-out for one notification type. No row means allowed."""

    __tablename__ = "notification_preferences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    notification_type: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[ChannelType] = mapped_column(Enum(ChannelType), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="notification_preferences")

    # Constraints
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "notification_type",
            "channel",
            name="uq_notif_pref_user_type_channel",
        ),
        Index("idx_notif_pref_user_type", "user_id", "notification_type"),
    )


# Scheduling
class ScheduledNotification(Base, AuditMixin):
    __tablename__ = "scheduled_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(255), nullable=False)
    # JSON stored as Text - serialize/deserialize in application
    channels: Mapped[str] = mapped_column(Text, nullable=False)
    recipients: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    schedule: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[ScheduledNotificationStatus] = mapped_column(
        Enum(ScheduledNotificationStatus),
        default=ScheduledNotificationStatus.PENDING,
        nullable=False,
    )
    # Kept while processing so the in-flight occurrence is known
    next_occurrence_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    claim_token: Mapped[Optional[str]] = mapped_column(String(36))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_fired_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    deliveries: Mapped[List["ScheduledNotificationDelivery"]] = relationship(
        back_populates="scheduled_notification", cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "occurrence_count >= 0", name="ck_sched_notif_occurrence_count"
        ),
        CheckConstraint(
            "(status IN ('PENDING', 'PROCESSING')) = (next_occurrence_at IS NOT NULL)",
            name="ck_sched_notif_next_occurrence_when_active",
        ),
        Index("idx_sched_notif_status_next", "status", "next_occurrence_at"),
        Index("idx_sched_notif_type", "notification_type"),
        Index("idx_sched_notif_created_by", "created_by"),
        Index("idx_sched_notif_claimed_at", "claimed_at"),
    )


class ScheduledNotificationDelivery(Base, AuditMixin):
    """One delivery attempt for one occurrence, user and channel."""

    __tablename__ = "scheduled_notification_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    scheduled_notification_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("scheduled_notifications.id", ondelete="CASCADE"),
        nullable=False,
    )
    occurrence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(Enum(DeliveryStatus), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Relationships
    scheduled_notification: Mapped["ScheduledNotification"] = relationship(
        back_populates="deliveries"
    )

    # Constraints
    __table_args__ = (
        Index("idx_sched_deliv_notification", "scheduled_notification_id"),
        Index("idx_sched_deliv_status", "status"),
        Index("idx_sched_deliv_user", "user_id"),
    )


class UserNotification(Base, AuditMixin):
    """In-app inbox entry written by the database channel."""

    __tablename__ = "user_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    notification_type: Mapped[str] = mapped_column(String(255), nullable=False)
    # JSON stored as Text - serialize/deserialize in application
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    delivered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "read_at IS NULL OR read_at >= delivered_at",
            name="ck_user_notif_read_after_delivered",
        ),
        Index("idx_user_notif_user", "user_id"),
        Index("idx_user_notif_user_read", "user_id", "read_at"),
    )
