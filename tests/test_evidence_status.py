from datetime import datetime

from conftest import MIB, raw
from evidence_intake import submit
from evidence_status import snapshot
from evidence_tickets import ExistingRecord, NewRecord, TicketState, UploadResult


def test_snapshot_counts_and_coverage():
    tickets = submit([
        raw("a.jpg", "image/jpeg"),
        raw("b.mp4", "video/mp4"),
        raw("c.pdf", "application/pdf"),
        raw("huge.png", "image/png", byte_size=60 * MIB),
    ])
    tickets[0].destination = NewRecord("Tractor")
    tickets[1].destination = ExistingRecord(7)

    summary = snapshot(tickets, "batch-1")

    assert summary.batch_id == "batch-1"
    assert summary.total == 4
    assert summary.counts.pending == 3
    assert summary.counts.rejected == 1
    assert summary.assignment_coverage == 2 / 3
    assert summary.assignment_label == "2 of 3 files assigned"
    assert summary.by_category == {"photo": 2, "video": 1, "document": 1}
    assert [d.destination for d in summary.tickets] == [
        "new item 'Tractor'",
        "item #7",
        "unassigned",
        "unassigned",
    ]
    assert summary.tickets[3].message == "file too large"


def test_snapshot_reports_results_and_is_read_only():
    [ticket] = submit([raw("a.jpg", "image/jpeg")])
    ticket.destination = ExistingRecord(1)
    ticket.state = TicketState.COMPLETED
    ticket.progress = 100
    ticket.result = UploadResult(
        evidence_id=11,
        stored_location="evidence/item_1/photo/a.jpg",
        category="photo",
        created_at=datetime(2024, 1, 2, 3, 4, 5),
        original_name="a.jpg",
        ticket_id=ticket.id,
    )
    before = (ticket.state, ticket.progress, ticket.destination, ticket.error)

    summary = snapshot([ticket])

    assert (ticket.state, ticket.progress, ticket.destination, ticket.error) == before
    assert summary.counts.completed == 1
    assert summary.tickets[0].result.evidence_id == 11
    assert summary.assignment_coverage == 1.0


def test_empty_snapshot():
    summary = snapshot([])
    assert summary.total == 0
    assert summary.assignment_coverage == 1.0
    assert summary.tickets == []
