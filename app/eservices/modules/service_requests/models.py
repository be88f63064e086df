from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.eservices.models import Base, User
from app.eservices.utils import utcnow

if TYPE_CHECKING:
    from app.eservices.modules.catalog.models import Service


class ServiceRequest(Base):
    """
    A citizen's application for a Service.

    ``user_id``, ``service_id`` and ``reference_number`` never change after insert.
    ``version`` is the optimistic concurrency counter; SQLAlchemy bumps it on every
    UPDATE and refuses to flush against a stale row.
    """

    __tablename__ = "service_requests"
    __table_args__ = (
        UniqueConstraint("reference_number", name="uq_service_requests_reference_number"),
        Index("idx_service_requests_user", "user_id"),
        Index("idx_service_requests_service", "service_id"),
        Index("idx_service_requests_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id", ondelete="RESTRICT"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="submitted")
    form_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    reviewed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    reference_number: Mapped[str] = mapped_column(String(32), nullable=False)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    owner: Mapped[User] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    reviewer: Mapped["User | None"] = relationship("User", foreign_keys=[reviewed_by], lazy="selectin")
    service: Mapped["Service"] = relationship("Service", lazy="selectin")
    payment: Mapped["Payment | None"] = relationship(
        "Payment",
        back_populates="request",
        uselist=False,
        lazy="selectin",
    )
    documents: Mapped[list["RequestDocument"]] = relationship(
        "RequestDocument",
        back_populates="request",
        lazy="selectin",
        order_by="RequestDocument.uploaded_at",
    )

    def to_dict(self, *, detail: bool = False) -> dict:
        out: dict[str, object] = {
            "id": self.id,
            "reference_number": self.reference_number,
            "user_id": self.user_id,
            "service_id": self.service_id,
            "service": self.service.name if self.service else None,
            "status": self.status,
            "version": self.version,
            "remarks": self.remarks,
            "reviewed_by": self.reviewed_by,
            "reviewer": self.reviewer.name if self.reviewer else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "payment": self.payment.to_dict() if self.payment else None,
        }
        if detail:
            out["form_data"] = self.form_data or {}
            out["documents"] = [d.to_dict() for d in self.documents]
        return out


class Payment(Base):
    """
    At most one per request. ``amount`` is the service fee copied at creation;
    later fee changes never touch it. Settlement (pending -> paid/failed/refunded)
    happens outside this application.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(
        ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, paid, failed, refunded
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    request: Mapped[ServiceRequest] = relationship("ServiceRequest", back_populates="payment")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "status": self.status,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
        }


class RequestDocument(Base):
    """Supporting document; the bytes live in blob storage under ``storage_key``."""

    __tablename__ = "request_documents"
    __table_args__ = (
        Index("idx_request_documents_request", "request_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False)  # pdf, image, document
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    request: Mapped[ServiceRequest] = relationship("ServiceRequest", back_populates="documents")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }
