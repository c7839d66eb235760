from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JSONType


TASK_PENDING = 'pending'
TASK_PROCESSING = 'processing'
TASK_COMPLETED = 'completed'
TASK_FAILED = 'failed'

ACTIVE_TASK_STATUSES = (TASK_PENDING, TASK_PROCESSING)
TERMINAL_TASK_STATUSES = (TASK_COMPLETED, TASK_FAILED)


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mobile_number: Mapped[str] = mapped_column(String(16), unique=True, index=True)
    first_name: Mapped[str] = mapped_column(String(50))
    last_name: Mapped[str] = mapped_column(String(50))
    credits: Mapped[int] = mapped_column(Integer, default=0)
    current_plan: Mapped[str | None] = mapped_column(String(16), nullable=True)
    plan_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    plan_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    images_generated_this_month: Mapped[int] = mapped_column(Integer, default=0)
    monthly_reset_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    ledger_entries: Mapped[list['CreditLedger']] = relationship(back_populates='user')
    tasks: Mapped[list['Task']] = relationship(back_populates='user')

    __table_args__ = (
        CheckConstraint('credits >= 0', name='credits_non_negative'),
    )


class CreditLedger(Base):
    __tablename__ = 'credit_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    delta_credits: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['User'] = relationship(back_populates='ledger_entries')


class Task(Base):
    __tablename__ = 'tasks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Assigned by the provider; NULL until createTask answers.
    task_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    provider: Mapped[str] = mapped_column(String(32))
    task_type: Mapped[str] = mapped_column(String(16), default='image', index=True)
    mode: Mapped[str] = mapped_column(String(32))
    prompt: Mapped[str] = mapped_column(Text)
    num_images: Mapped[int] = mapped_column(Integer, default=1)
    options: Mapped[dict] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String(16), default=TASK_PENDING, index=True)
    images: Mapped[list] = mapped_column(JSONType, default=list)
    videos: Mapped[list] = mapped_column(JSONType, default=list)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits_reserved: Mapped[int] = mapped_column(Integer)
    credits_deducted: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped['User'] = relationship(back_populates='tasks')

    __table_args__ = (
        CheckConstraint('num_images >= 1 AND num_images <= 4', name='num_images_range'),
        CheckConstraint('credits_reserved >= 0', name='credits_reserved_non_negative'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class HistoryEntry(Base):
    __tablename__ = 'history_entries'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    kind: Mapped[str] = mapped_column(String(8))
    url: Mapped[str] = mapped_column(Text)
    prompt: Mapped[str] = mapped_column(Text)
    task_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    __table_args__ = (
        UniqueConstraint('task_id', 'url', name='uq_history_entries_task_url'),
    )


class BillingEntry(Base):
    __tablename__ = 'billing_entries'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    kind: Mapped[str] = mapped_column(String(16))
    plan: Mapped[str | None] = mapped_column(String(16), nullable=True)
    credits: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    original_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discount_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default='pending')
    authority: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    ref_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Discount(Base):
    __tablename__ = 'discounts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    discount_type: Mapped[str] = mapped_column(String(16))
    discount_value: Mapped[int] = mapped_column(Integer)
    capacity: Mapped[int] = mapped_column(Integer)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint('used_count <= capacity', name='used_within_capacity'),
    )


class OtpCode(Base):
    __tablename__ = 'otp_codes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mobile_number: Mapped[str] = mapped_column(String(16), index=True)
    hashed_code: Mapped[str] = mapped_column(String(128))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
