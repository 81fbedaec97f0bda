# evidence_status.py

from __future__ import annotations

from collections import Counter
from typing import Iterable, Optional

from evidence_tickets import CATEGORIES, FileTicket, TicketState, describe_destination
from schemas_evidence import BatchSummary, StateCounts, TicketDetailOut, UploadResultOut


def _detail(ticket: FileTicket) -> TicketDetailOut:
    result = None
    if ticket.result is not None:
        result = UploadResultOut(
            evidence_id=ticket.result.evidence_id,
            stored_location=ticket.result.stored_location,
            category=ticket.result.category,
            created_at=ticket.result.created_at,
            original_name=ticket.result.original_name,
        )

    return TicketDetailOut(
        id=ticket.id,
        original_name=ticket.original_name,
        category=ticket.category,
        byte_size=ticket.byte_size,
        destination=describe_destination(ticket.destination),
        state=ticket.state.value,
        progress=ticket.progress,
        message=ticket.error,
        preview=ticket.preview,
        result=result,
    )


def snapshot(tickets: Iterable[FileTicket], batch_id: Optional[str] = None) -> BatchSummary:
    """
    Read-only summary of a ticket set. Coverage counts only tickets that can
    still be uploaded (rejected files never need a destination).
    """
    tickets = list(tickets)
    states = Counter(t.state for t in tickets)

    eligible = [t for t in tickets if t.state != TicketState.REJECTED]
    assigned = sum(1 for t in eligible if t.destination is not None)
    coverage = assigned / len(eligible) if eligible else 1.0

    by_category = {c: 0 for c in CATEGORIES}
    by_category.update(Counter(t.category for t in tickets))

    return BatchSummary(
        batch_id=batch_id,
        counts=StateCounts(**{s.value: states.get(s, 0) for s in TicketState}),
        total=len(tickets),
        assignment_coverage=coverage,
        assignment_label=f"{assigned} of {len(eligible)} files assigned",
        by_category=by_category,
        tickets=[_detail(t) for t in tickets],
    )
