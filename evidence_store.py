# evidence_store.py

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from evidence_tickets import (
    EvidenceBatch,
    ExistingRecord,
    FileTicket,
    NewRecord,
    TicketState,
    UploadResult,
)
from models_evidence import EvidenceBatchRow, EvidenceTicketRow

# --------------------------------------------------------
# Mirror in-memory batches into evidence_batches / evidence_batch_tickets
# --------------------------------------------------------


def _utcnow():
    return datetime.utcnow()


def _destination_columns(ticket: FileTicket) -> Tuple[Optional[str], Optional[str]]:
    key = ticket.destination
    if isinstance(key, ExistingRecord):
        return "existing", str(key.record_id)
    if isinstance(key, NewRecord):
        return "new", key.name
    return None, None


def _batch_status(batch: EvidenceBatch) -> str:
    if batch.discarded:
        return "discarded"
    if batch.running:
        return "running"
    states = {t.state for t in batch.tickets}
    if TicketState.PENDING in states or TicketState.UPLOADING in states or not states:
        return "open"
    if TicketState.FAILED in states:
        return "completed_with_errors"
    return "completed"


def _apply_ticket(row: EvidenceTicketRow, ticket: FileTicket, position: int) -> None:
    row.position = position
    row.original_filename = ticket.original_name
    row.content_type = ticket.content_type
    row.byte_size = ticket.byte_size
    row.category = ticket.category
    row.destination_kind, row.destination_value = _destination_columns(ticket)
    row.record_id = ticket.record_id
    row.status = ticket.state.value
    row.progress = ticket.progress
    row.error = ticket.error
    row.attempts = ticket.attempts
    if ticket.result is not None:
        row.evidence_id = ticket.result.evidence_id
        row.stored_location = ticket.result.stored_location
        row.uploaded_at = ticket.result.created_at
    row.updated_at = _utcnow()


def save_batch(db: Session, batch: EvidenceBatch) -> EvidenceBatchRow:
    row = db.get(EvidenceBatchRow, batch.id)
    if row is None:
        row = EvidenceBatchRow(id=batch.id, owner_reference=batch.owner_reference, created_at=batch.created_at)
        db.add(row)

    existing = {t.id: t for t in row.tickets}
    keep = set()
    for position, ticket in enumerate(batch.tickets):
        ticket_row = existing.get(ticket.id)
        if ticket_row is None:
            ticket_row = EvidenceTicketRow(id=ticket.id)
            row.tickets.append(ticket_row)
        _apply_ticket(ticket_row, ticket, position)
        keep.add(ticket.id)

    # tickets removed from the batch before upload
    for ticket_id, ticket_row in existing.items():
        if ticket_id not in keep:
            row.tickets.remove(ticket_row)

    row.status = _batch_status(batch)
    row.total_files = len(batch.tickets)
    row.completed_files = sum(1 for t in batch.tickets if t.state == TicketState.COMPLETED)
    row.failed_files = sum(1 for t in batch.tickets if t.state == TicketState.FAILED)
    row.rejected_files = sum(1 for t in batch.tickets if t.state == TicketState.REJECTED)
    row.updated_at = _utcnow()

    db.commit()
    return row


def _ticket_from_row(row: EvidenceTicketRow) -> FileTicket:
    if row.destination_kind == "existing":
        destination = ExistingRecord(int(row.destination_value))
    elif row.destination_kind == "new":
        destination = NewRecord(row.destination_value)
    else:
        destination = None

    result = None
    if row.evidence_id is not None:
        result = UploadResult(
            evidence_id=row.evidence_id,
            stored_location=row.stored_location or "",
            category=row.category,
            created_at=row.uploaded_at or row.updated_at,
            original_name=row.original_filename,
            ticket_id=row.id,
        )

    # source bytes are never persisted
    return FileTicket(
        id=row.id,
        original_name=row.original_filename,
        byte_size=row.byte_size,
        content_type=row.content_type,
        category=row.category,
        state=TicketState(row.status),
        progress=row.progress,
        error=row.error,
        destination=destination,
        record_id=row.record_id,
        result=result,
        attempts=row.attempts,
    )


def load_tickets(db: Session, batch_id: str) -> Optional[List[FileTicket]]:
    row = db.execute(select(EvidenceBatchRow).where(EvidenceBatchRow.id == batch_id)).scalars().first()
    if row is None:
        return None
    return [_ticket_from_row(t) for t in row.tickets]
