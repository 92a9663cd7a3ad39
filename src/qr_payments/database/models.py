"""SQLAlchemy models for gateway transaction persistence."""

import uuid
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Numeric,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(value) if value else None


class TransactionStatus(str, enum.Enum):
    """Lifecycle of one payment attempt."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    REVERSED = "reversed"


# Forward-only transitions. pending -> failed covers internal errors raised
# after the row was written but before the first gateway attempt.
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    TransactionStatus.PENDING.value: frozenset({
        TransactionStatus.PROCESSING.value,
        TransactionStatus.FAILED.value,
    }),
    TransactionStatus.PROCESSING.value: frozenset({
        TransactionStatus.SUCCESS.value,
        TransactionStatus.FAILED.value,
    }),
    TransactionStatus.SUCCESS.value: frozenset({TransactionStatus.REVERSED.value}),
    TransactionStatus.FAILED.value: frozenset(),
    TransactionStatus.REVERSED.value: frozenset(),
}


def is_transition_allowed(current: str, new: str) -> bool:
    """Check a status change against the transition table."""
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


class SubRecordStatus(str, enum.Enum):
    """Status of reversal and fiscalization records."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class AuditAction(str, enum.Enum):
    """Actions recorded in the audit log."""
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_COMPLETED = "payment_completed"
    STATUS_CHECKED = "status_checked"
    REVERSAL_REQUESTED = "reversal_requested"
    FISCALIZATION_SENT = "fiscalization_sent"
    ERROR_OCCURRED = "error_occurred"


class Transaction(Base):
    """One payment attempt against a gateway. Never deleted by the core."""
    __tablename__ = "gateway_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)

    # Identifiers
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Money
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_major: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="UZS")
    cashbox_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Request/response tracking
    request_payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    response_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auth_header: Mapped[str] = mapped_column(Text, nullable=False)
    auth_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    error_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timeout_occurred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Context
    employee_id: Mapped[str] = mapped_column(String(50), nullable=False)
    terminal_id: Mapped[str] = mapped_column(String(100), nullable=False)
    pos_sale_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Gateway-returned extras (masked phone, card brand, QR url, ...)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    initiated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    audit_entries: Mapped[List["AuditEntry"]] = relationship(
        "AuditEntry",
        back_populates="transaction",
        order_by="AuditEntry.created_at",
    )
    reversal: Mapped[Optional["Reversal"]] = relationship(
        "Reversal", back_populates="transaction", uselist=False
    )
    fiscalization: Mapped[Optional["Fiscalization"]] = relationship(
        "Fiscalization", back_populates="transaction", uselist=False
    )

    __table_args__ = (
        Index("ix_gateway_transactions_status", "status"),
        Index("ix_gateway_transactions_employee_id", "employee_id"),
        Index("ix_gateway_transactions_terminal_id", "terminal_id"),
        Index("ix_gateway_transactions_initiated_at", "initiated_at"),
        Index("ix_gateway_transactions_gateway", "gateway"),
    )

    @property
    def request_payload(self) -> Optional[Dict[str, Any]]:
        """Outbound request body as sent to the gateway."""
        return _load(self.request_payload_json)

    @request_payload.setter
    def request_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.request_payload_json = _dump(value)

    @property
    def response_payload(self) -> Optional[Dict[str, Any]]:
        """Inbound response body as received from the gateway."""
        return _load(self.response_payload_json)

    @response_payload.setter
    def response_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.response_payload_json = _dump(value)

    @property
    def gateway_metadata(self) -> Optional[Dict[str, Any]]:
        return _load(self.metadata_json)

    @gateway_metadata.setter
    def gateway_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.metadata_json = _dump(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to dictionary representation."""
        return {
            "id": self.id,
            "gateway": self.gateway,
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "gateway_transaction_id": self.gateway_transaction_id,
            "gateway_payment_id": self.gateway_payment_id,
            "amount_minor": self.amount_minor,
            "amount_major": str(self.amount_major) if self.amount_major is not None else None,
            "currency": self.currency,
            "cashbox_code": self.cashbox_code,
            "status": self.status,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "timeout_occurred": self.timeout_occurred,
            "employee_id": self.employee_id,
            "terminal_id": self.terminal_id,
            "pos_sale_id": self.pos_sale_id,
            "metadata": self.gateway_metadata,
            "initiated_at": self.initiated_at.isoformat() if self.initiated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ConfigItem(Base):
    """Persisted gateway credential or setting."""
    __tablename__ = "gateway_config"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("gateway", "key", name="uq_gateway_config_gateway_key"),
        Index("ix_gateway_config_active", "gateway", "is_active"),
    )


class AuditEntry(Base):
    """Append-only record of one state transition or external call."""
    __tablename__ = "gateway_audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("gateway_transactions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    employee_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    terminal_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Request details (for gateway calls)
    http_method: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    endpoint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    response_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction", back_populates="audit_entries")

    __table_args__ = (
        Index("ix_gateway_audit_log_action", "action"),
        Index("ix_gateway_audit_log_created_at", "created_at"),
    )

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        return _load(self.details_json)

    @details.setter
    def details(self, value: Optional[Dict[str, Any]]) -> None:
        self.details_json = _dump(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "gateway": self.gateway,
            "action": self.action,
            "details": self.details,
            "employee_id": self.employee_id,
            "terminal_id": self.terminal_id,
            "http_method": self.http_method,
            "endpoint": self.endpoint,
            "response_status": self.response_status,
            "response_time_ms": self.response_time_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class _GatewayCallRecord:
    """Columns shared by reversal and fiscalization records."""

    @property
    def request_payload(self) -> Optional[Dict[str, Any]]:
        return _load(self.request_payload_json)

    @request_payload.setter
    def request_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.request_payload_json = _dump(value)

    @property
    def response_payload(self) -> Optional[Dict[str, Any]]:
        return _load(self.response_payload_json)

    @response_payload.setter
    def response_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.response_payload_json = _dump(value)


class Reversal(_GatewayCallRecord, Base):
    """Reversal request for a successful transaction (at most one per transaction)."""
    __tablename__ = "gateway_reversals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("gateway_transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    original_order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    request_payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    response_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubRecordStatus.PENDING.value)
    error_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_by: Mapped[str] = mapped_column(String(50), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="reversal")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "original_order_id": self.original_order_id,
            "status": self.status,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "attempts": self.attempts,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Fiscalization(_GatewayCallRecord, Base):
    """Fiscal receipt submission for a successful transaction (at most one per transaction)."""
    __tablename__ = "gateway_fiscalizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("gateway_transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    fiscal_url: Mapped[str] = mapped_column(Text, nullable=False)

    request_payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    response_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubRecordStatus.PENDING.value)
    error_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    transaction: Mapped["Transaction"] = relationship("Transaction", back_populates="fiscalization")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "fiscal_url": self.fiscal_url,
            "status": self.status,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
