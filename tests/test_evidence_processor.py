import asyncio

import pytest

from conftest import MIB, FakeEvidenceService, jpeg_bytes, png_bytes, raw
from evidence_intake import submit
from evidence_processor import (
    PROVISION_FAILED,
    ProvisioningFlights,
    RequestState,
    provision,
    retry,
    retry_failed,
    run_batch,
    upload,
)
from evidence_targets import Group, assign, resolve
from evidence_tickets import (
    EvidenceBatch,
    ExistingRecord,
    InvalidTransition,
    NewRecord,
    TicketState,
    UnassignedTicketsError,
)

FAST = 0.005


def _batch(files, owner="owner-1"):
    batch = EvidenceBatch(owner_reference=owner)
    batch.add(submit(files))
    return batch


@pytest.mark.asyncio
async def test_three_photos_one_new_item(service):
    batch = _batch([raw(f"tractor-{i}.jpg", "image/jpeg", jpeg_bytes()) for i in range(3)])
    resolution = resolve(batch.tickets, {t.id: NewRecord("Tractor") for t in batch.tickets})

    summary = await run_batch(batch, service, resolution, interval=FAST)

    assert len(service.create_calls) == 1
    name, description, owner = service.create_calls[0]
    assert (name, owner) == ("Tractor", "owner-1")
    assert description == "Item created from bulk upload with 3 files"

    assert [c[0] for c in service.upload_calls] == ["tractor-0.jpg", "tractor-1.jpg", "tractor-2.jpg"]
    assert {c[1] for c in service.upload_calls} == {100}
    assert {t.record_id for t in batch.tickets} == {100}
    assert summary.counts.completed == 3
    assert service.max_active_uploads == 1


@pytest.mark.asyncio
async def test_oversize_and_valid_mixed(service):
    batch = _batch([
        raw("huge.png", "image/png", byte_size=60 * MIB),
        raw("small.png", "image/png", png_bytes(), byte_size=2 * MIB),
    ])
    resolution = resolve(batch.tickets, {t.id: ExistingRecord(7) for t in batch.tickets})

    summary = await run_batch(batch, service, resolution, interval=FAST)

    huge, small = batch.tickets
    assert huge.state == TicketState.REJECTED
    assert huge.error == "file too large"
    assert huge.attempts == 0
    assert small.state == TicketState.COMPLETED
    assert service.upload_calls == [("small.png", 7, "photo")]
    assert service.create_calls == []
    assert summary.counts.rejected == 1
    assert summary.counts.completed == 1


@pytest.mark.asyncio
async def test_provisioning_failure_blocks_its_group_only():
    service = FakeEvidenceService(fail_names={"A"})
    batch = _batch([
        raw("a1.jpg", "image/jpeg"),
        raw("a2.jpg", "image/jpeg"),
        raw("b1.pdf", "application/pdf"),
    ])
    a1, a2, b1 = batch.tickets
    resolution = resolve(batch.tickets, {
        a1.id: NewRecord("A"),
        a2.id: NewRecord("A"),
        b1.id: ExistingRecord(42),
    })

    summary = await run_batch(batch, service, resolution, interval=FAST)

    assert [a1.state, a2.state] == [TicketState.FAILED, TicketState.FAILED]
    assert a1.error == a2.error == PROVISION_FAILED
    assert b1.state == TicketState.COMPLETED
    assert service.upload_calls == [("b1.pdf", 42, "document")]
    assert summary.counts.failed == 2
    assert summary.counts.completed == 1


@pytest.mark.asyncio
async def test_transfer_failure_does_not_stop_siblings():
    service = FakeEvidenceService(fail_files={"first.jpg"})
    batch = _batch([raw("first.jpg", "image/jpeg"), raw("second.jpg", "image/jpeg")])
    first, second = batch.tickets
    resolution = resolve(batch.tickets, {t.id: ExistingRecord(5) for t in batch.tickets})

    await run_batch(batch, service, resolution, interval=FAST)

    assert first.state == TicketState.FAILED
    assert first.error == "Item not found"
    assert first.progress == 0
    assert first.source is not None  # kept for retry
    assert second.state == TicketState.COMPLETED
    assert second.result.evidence_id == 1
    assert second.source is None


@pytest.mark.asyncio
async def test_groups_run_in_order_one_ticket_at_a_time():
    service = FakeEvidenceService(upload_delay=0.01)
    batch = _batch([raw(f"f{i}.txt", "text/plain") for i in range(5)])
    t = batch.tickets
    resolution = resolve(t, {
        t[0].id: ExistingRecord(2),
        t[1].id: ExistingRecord(1),
        t[2].id: ExistingRecord(2),
        t[3].id: NewRecord("X"),
        t[4].id: ExistingRecord(1),
    })

    await run_batch(batch, service, resolution, interval=FAST)

    assert [c[0] for c in service.upload_calls] == ["f0.txt", "f2.txt", "f1.txt", "f4.txt", "f3.txt"]
    assert service.max_active_uploads == 1


@pytest.mark.asyncio
async def test_bounded_concurrency_keeps_single_record_creation():
    service = FakeEvidenceService(upload_delay=0.02)
    batch = _batch([raw(f"f{i}.jpg", "image/jpeg") for i in range(6)])
    resolution = resolve(batch.tickets, {t.id: NewRecord("Van") for t in batch.tickets})

    summary = await run_batch(batch, service, resolution, concurrency=3, interval=FAST)

    assert len(service.create_calls) == 1
    assert summary.counts.completed == 6
    assert 1 < service.max_active_uploads <= 3


@pytest.mark.asyncio
async def test_single_flight_shares_one_request(service):
    tickets = submit([raw("a.jpg", "image/jpeg"), raw("b.jpg", "image/jpeg")])
    flights = ProvisioningFlights()
    g1 = Group(key=NewRecord("Saw"), tickets=[tickets[0]])
    g2 = Group(key=NewRecord("Saw"), tickets=[tickets[1]])

    assert flights.state("Saw") == RequestState.IDLE
    ok = await asyncio.gather(
        provision(g1, service, "owner-1", flights),
        provision(g2, service, "owner-1", flights),
    )

    assert ok == [True, True]
    assert len(service.create_calls) == 1
    assert tickets[0].record_id == tickets[1].record_id == 100
    assert flights.state("Saw") == RequestState.DONE


@pytest.mark.asyncio
async def test_existing_record_needs_no_request(service):
    tickets = submit([raw("a.jpg", "image/jpeg")])
    assert await provision(Group(key=ExistingRecord(9), tickets=tickets), service)
    assert tickets[0].record_id == 9
    assert service.create_calls == []


@pytest.mark.asyncio
async def test_unassigned_tickets_stop_before_any_request(service):
    batch = _batch([raw("a.jpg", "image/jpeg"), raw("b.jpg", "image/jpeg")])
    batch.tickets[0].destination = ExistingRecord(1)

    with pytest.raises(UnassignedTicketsError) as exc:
        await run_batch(batch, service)

    assert exc.value.ticket_ids == [batch.tickets[1].id]
    assert service.upload_calls == []


@pytest.mark.asyncio
async def test_new_record_without_owner_is_rejected_up_front(service):
    batch = _batch([raw("a.jpg", "image/jpeg")], owner=None)
    resolution = resolve(batch.tickets, {batch.tickets[0].id: NewRecord("Boat")})

    with pytest.raises(ValueError):
        await run_batch(batch, service, resolution)

    assert batch.tickets[0].state == TicketState.PENDING
    assert service.create_calls == []


@pytest.mark.asyncio
async def test_progress_estimator_advances_then_completes():
    service = FakeEvidenceService(upload_delay=0.2)
    [ticket] = submit([raw("clip.mp4", "video/mp4")])
    ticket.record_id = 3

    task = asyncio.ensure_future(upload(ticket, service, interval=0.01))
    await asyncio.sleep(0.08)
    assert ticket.state == TicketState.UPLOADING
    assert 0 < ticket.progress <= 90

    assert await task is True
    assert ticket.state == TicketState.COMPLETED
    assert ticket.progress == 100


@pytest.mark.asyncio
async def test_upload_requires_pending_and_bound_record(service):
    [ticket] = submit([raw("a.jpg", "image/jpeg")])
    with pytest.raises(ValueError):
        await upload(ticket, service)

    ticket.record_id = 1
    await upload(ticket, service, interval=FAST)
    with pytest.raises(InvalidTransition):
        await upload(ticket, service)


@pytest.mark.asyncio
async def test_retry_single_ticket():
    service = FakeEvidenceService(fail_files={"a.jpg"})
    [ticket] = submit([raw("a.jpg", "image/jpeg")])
    ticket.destination = ExistingRecord(4)
    ticket.record_id = 4

    assert await upload(ticket, service, interval=FAST) is False
    with pytest.raises(InvalidTransition):
        await retry(submit([raw("b.jpg", "image/jpeg")])[0], service)

    service.fail_files.clear()
    assert await retry(ticket, service, interval=FAST) is True
    assert ticket.state == TicketState.COMPLETED
    assert ticket.attempts == 2


@pytest.mark.asyncio
async def test_retry_after_provisioning_failure_provisions_again():
    service = FakeEvidenceService(fail_names={"A"})
    batch = _batch([raw("a1.jpg", "image/jpeg"), raw("a2.jpg", "image/jpeg")])
    resolution = resolve(batch.tickets, {t.id: NewRecord("A") for t in batch.tickets})
    await run_batch(batch, service, resolution, interval=FAST)
    assert {t.state for t in batch.tickets} == {TicketState.FAILED}

    service.fail_names.clear()
    summary = await retry_failed(batch, service, interval=FAST)

    assert len(service.create_calls) == 2
    assert summary.counts.completed == 2
    assert {t.record_id for t in batch.tickets} == {100}


@pytest.mark.asyncio
async def test_retry_rejects_tickets_that_did_not_fail(service):
    batch = _batch([raw("a.jpg", "image/jpeg")])
    with pytest.raises(InvalidTransition):
        await retry_failed(batch, service, [batch.tickets[0].id])


@pytest.mark.asyncio
async def test_retry_refuses_failed_ticket_with_cleared_destination():
    service = FakeEvidenceService(fail_files={"a.jpg"})
    batch = _batch([raw("a.jpg", "image/jpeg")])
    [ticket] = batch.tickets
    await run_batch(batch, service, resolve(batch.tickets, {ticket.id: ExistingRecord(1)}), interval=FAST)
    assert ticket.state == TicketState.FAILED

    assign(ticket, None)
    service.fail_files.clear()

    with pytest.raises(UnassignedTicketsError) as exc:
        await retry_failed(batch, service, interval=FAST)

    assert exc.value.ticket_ids == [ticket.id]
    assert ticket.state == TicketState.FAILED
    assert service.upload_calls == [("a.jpg", 1, "photo")]


@pytest.mark.asyncio
async def test_cancel_marks_in_flight_and_releases_handles():
    service = FakeEvidenceService(upload_delay=5)
    batch = _batch([raw("a.jpg", "image/jpeg"), raw("b.jpg", "image/jpeg")])
    first, second = batch.tickets
    resolution = resolve(batch.tickets, {t.id: ExistingRecord(1) for t in batch.tickets})

    run = asyncio.ensure_future(run_batch(batch, service, resolution, interval=FAST))
    await asyncio.sleep(0.05)
    assert batch.running
    assert batch.cancel()

    summary = await run

    assert first.state == TicketState.FAILED
    assert first.error == "upload cancelled"
    assert second.state == TicketState.PENDING
    assert first.source is None and second.source is None
    assert not batch.running
    assert summary.counts.failed == 1
