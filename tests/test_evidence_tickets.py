from io import BytesIO

import pytest

from evidence_tickets import (
    EvidenceBatch,
    EvidenceError,
    FileTicket,
    InvalidTransition,
    TicketState,
    advance_progress,
    transition,
)


def _ticket(**kwargs):
    return FileTicket(original_name="a.png", byte_size=10, content_type="image/png", category="photo", **kwargs)


def test_happy_path_transitions():
    t = _ticket()
    transition(t, TicketState.UPLOADING)
    assert t.attempts == 1
    t.progress = 40
    transition(t, TicketState.COMPLETED)
    assert t.progress == 100
    assert t.is_terminal


@pytest.mark.parametrize(
    "start, target",
    [
        (TicketState.PENDING, TicketState.COMPLETED),
        (TicketState.PENDING, TicketState.FAILED),
        (TicketState.COMPLETED, TicketState.PENDING),
        (TicketState.COMPLETED, TicketState.UPLOADING),
        (TicketState.COMPLETED, TicketState.FAILED),
        (TicketState.REJECTED, TicketState.PENDING),
        (TicketState.FAILED, TicketState.UPLOADING),
        (TicketState.UPLOADING, TicketState.PENDING),
    ],
)
def test_illegal_transitions(start, target):
    t = _ticket(state=start)
    with pytest.raises(InvalidTransition):
        transition(t, target)
    assert t.state == start


def test_retry_resets_progress():
    t = _ticket()
    transition(t, TicketState.UPLOADING)
    t.progress = 70
    transition(t, TicketState.FAILED)
    t.error = "boom"
    transition(t, TicketState.PENDING)
    assert t.error is None
    transition(t, TicketState.UPLOADING)
    assert t.progress == 0
    assert t.attempts == 2


def test_progress_is_capped_and_monotonic():
    t = _ticket()
    advance_progress(t, 10, 90)
    assert t.progress == 0  # not uploading yet
    transition(t, TicketState.UPLOADING)
    seen = []
    for _ in range(15):
        advance_progress(t, 10, 90)
        seen.append(t.progress)
    assert seen == sorted(seen)
    assert seen[-1] == 90


def test_batch_remove_and_discard():
    stream = BytesIO(b"data")
    keep, drop = _ticket(source=BytesIO(b"1")), _ticket(source=stream)
    batch = EvidenceBatch(owner_reference="owner-1")
    batch.add([keep, drop])

    batch.remove(drop.id)
    assert stream.closed
    assert list(batch) == [keep]

    with pytest.raises(KeyError):
        batch.get("missing")

    batch.discard()
    assert keep.source is None
    with pytest.raises(EvidenceError):
        batch.add([_ticket()])


def test_cannot_remove_attempted_ticket():
    t = _ticket(source=BytesIO(b"1"))
    batch = EvidenceBatch()
    batch.add([t])
    transition(t, TicketState.UPLOADING)
    with pytest.raises(EvidenceError):
        batch.remove(t.id)
