from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.eservices.models import Base, Department
from app.eservices.utils import utcnow


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint("fee >= 0", name="ck_services_fee_non_negative"),
        Index("idx_services_department", "department_id"),
        Index("idx_services_name", "name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    processing_time: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "3-5 business days"

    # UI-only form configuration; never enforced against a request's form_data.
    required_documents: Mapped[list | None] = mapped_column(JSON, nullable=True)
    form_fields: Mapped[list | None] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    department: Mapped[Department] = relationship("Department", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_id": self.department_id,
            "department": self.department.name if self.department else None,
            "name": self.name,
            "description": self.description,
            "fee": str(self.fee),
            "processing_time": self.processing_time,
            "required_documents": self.required_documents or [],
            "form_fields": self.form_fields or [],
            "is_active": self.is_active,
        }
