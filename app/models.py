from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class Location(Base):
    __tablename__ = "location"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default="UTC")
    currency_code: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    settings: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Role(Base):
    __tablename__ = "role"
    __table_args__ = (CheckConstraint("tip_weight >= 0", name="role_tip_weight"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("location.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    tip_weight: Mapped[Numeric] = mapped_column(Numeric, nullable=False, default=1)


class Employee(Base):
    __tablename__ = "employee"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("location.id")
    )
    role_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("role.id"))
    full_name: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TipLedger(Base):
    __tablename__ = "tip_ledger"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("location.id")
    )
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False, unique=True
    )
    current_balance_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipLedgerEntry(Base):
    __tablename__ = "tip_ledger_entry"
    __table_args__ = (
        CheckConstraint("type IN ('CREDIT', 'DEBIT')", name="tip_ledger_entry_type"),
        CheckConstraint(
            "(type = 'CREDIT' AND amount_cents > 0) OR (type = 'DEBIT' AND amount_cents < 0)",
            name="tip_ledger_entry_signed_amount",
        ),
        Index("ix_tip_ledger_entry_employee", "employee_id", "created_at"),
        Index("ix_tip_ledger_entry_source", "source_type", "source_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("location.id")
    )
    ledger_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tip_ledger.id"), nullable=False
    )
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str | None] = mapped_column(Text)
    order_id: Mapped[str | None] = mapped_column(Text)
    memo: Mapped[str | None] = mapped_column(Text)
    adjustment_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("tip_adjustment.id")
    )
    idempotency_key: Mapped[str | None] = mapped_column(Text, unique=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class TipTransaction(Base):
    __tablename__ = "tip_transaction"
    __table_args__ = (
        CheckConstraint("source_type IN ('CARD', 'CASH')", name="tip_transaction_source"),
        CheckConstraint(
            "kind IN ('tip', 'service_charge', 'auto_gratuity')",
            name="tip_transaction_kind",
        ),
        Index("ix_tip_transaction_payment", "payment_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("location.id")
    )
    order_id: Mapped[str] = mapped_column(Text, nullable=False)
    payment_id: Mapped[str | None] = mapped_column(Text)
    tip_group_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("tip_group.id")
    )
    segment_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("tip_group_segment.id")
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False, default="tip")
    collected_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    primary_employee_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("employee.id")
    )
    cc_fee_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(Text, unique=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class TipGroup(Base):
    __tablename__ = "tip_group"
    __table_args__ = (
        CheckConstraint("status IN ('active', 'closed')", name="tip_group_status"),
        CheckConstraint(
            "split_mode IN ('equal', 'role_weighted')", name="tip_group_split_mode"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("location.id"), nullable=False
    )
    created_by: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    owner_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    split_mode: Mapped[str] = mapped_column(Text, nullable=False, default="equal")
    started_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))


class TipGroupMembership(Base):
    __tablename__ = "tip_group_membership"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'left', 'pending_approval')",
            name="tip_group_membership_status",
        ),
        Index(
            "ix_tip_group_membership_one_active",
            "employee_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("location.id"), nullable=False
    )
    group_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tip_group.id"), nullable=False
    )
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    joined_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    left_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[int | None] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")


class TipGroupSegment(Base):
    __tablename__ = "tip_group_segment"
    __table_args__ = (
        Index(
            "ix_tip_group_segment_one_open",
            "group_id",
            unique=True,
            sqlite_where=text("ended_at IS NULL"),
            postgresql_where=text("ended_at IS NULL"),
        ),
        Index("ix_tip_group_segment_window", "group_id", "started_at"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("location.id"), nullable=False
    )
    group_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tip_group.id"), nullable=False
    )
    started_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    member_count: Mapped[int] = mapped_column(Integer, nullable=False)
    split_json: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)


class OrderOwnership(Base):
    __tablename__ = "order_ownership"
    __table_args__ = (
        Index(
            "ix_order_ownership_one_active",
            "order_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("location.id"), nullable=False
    )
    order_id: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderOwnershipEntry(Base):
    __tablename__ = "order_ownership_entry"
    __table_args__ = (
        Index(
            "ix_order_ownership_entry_unique",
            "order_ownership_id",
            "employee_id",
            unique=True,
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_ownership_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("order_ownership.id"), nullable=False
    )
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    share_percent: Mapped[Numeric] = mapped_column(Numeric(5, 2), nullable=False, default=0)


class TipDebt(Base):
    __tablename__ = "tip_debt"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("location.id")
    )
    employee_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("employee.id"), nullable=False
    )
    original_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_payment_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False, default="CHARGEBACK")
    memo: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class TipAdjustment(Base):
    __tablename__ = "tip_adjustment"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("location.id"), nullable=False
    )
    created_by_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(Text, nullable=False)
    context_json: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
