# models_evidence.py
import uuid
from datetime import datetime

from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, DateTime, Integer, String, Text, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

Base = declarative_base()

TICKET_STATES = "('pending','uploading','completed','failed','rejected')"


class EvidenceBatchRow(Base):
    __tablename__ = "evidence_batches"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    owner_reference = Column(String, nullable=True, index=True)

    status = Column(String, nullable=False, default="open")
    total_files = Column(Integer, nullable=False, default=0)
    completed_files = Column(Integer, nullable=False, default=0)
    failed_files = Column(Integer, nullable=False, default=0)
    rejected_files = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    tickets = relationship(
        "EvidenceTicketRow",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="EvidenceTicketRow.position",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open','running','completed','completed_with_errors','discarded')",
            name="evidence_batches_status_check",
        ),
    )


class EvidenceTicketRow(Base):
    __tablename__ = "evidence_batch_tickets"

    id = Column(String(32), primary_key=True)
    batch_id = Column(String(32), ForeignKey("evidence_batches.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    original_filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False, default="")
    byte_size = Column(Integer, nullable=False, default=0)
    category = Column(String, nullable=False)

    # "existing" / "new" / NULL, plus the id or name it refers to
    destination_kind = Column(String, nullable=True)
    destination_value = Column(String, nullable=True)
    record_id = Column(Integer, nullable=True)

    status = Column(String, nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    evidence_id = Column(Integer, nullable=True)
    stored_location = Column(Text, nullable=True)
    uploaded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    batch = relationship("EvidenceBatchRow", back_populates="tickets")

    __table_args__ = (
        CheckConstraint(f"status IN {TICKET_STATES}", name="evidence_batch_tickets_status_check"),
    )
