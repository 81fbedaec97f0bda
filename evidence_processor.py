# evidence_processor.py

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from evidence_clients import EvidenceServiceClient
from evidence_status import snapshot
from evidence_targets import Group, Resolution, resolve
from evidence_tickets import (
    EvidenceBatch,
    EvidenceError,
    ExistingRecord,
    FileTicket,
    InvalidTransition,
    NewRecord,
    ProvisioningError,
    TicketState,
    TransferError,
    UnassignedTicketsError,
    advance_progress,
    transition,
)
from schemas_evidence import BatchSummary

logger = logging.getLogger(__name__)


# --------------------------------------------------------
# Tunables
# --------------------------------------------------------

PROGRESS_STEP = 10
PROGRESS_CEILING = 90
PROGRESS_INTERVAL = float(os.getenv("EVIDENCE_PROGRESS_INTERVAL", "0.2"))
UPLOAD_CONCURRENCY = int(os.getenv("EVIDENCE_UPLOAD_CONCURRENCY", "1"))

PROVISION_FAILED = "failed to create record"
UPLOAD_CANCELLED = "upload cancelled"
SOURCE_RELEASED = "source file no longer available"


# --------------------------------------------------------
# Single-flight record creation
# --------------------------------------------------------

class RequestState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    ERROR = "error"


_REQUEST_TRANSITIONS = {
    RequestState.IDLE: {RequestState.IN_FLIGHT},
    RequestState.IN_FLIGHT: {RequestState.DONE, RequestState.ERROR},
    RequestState.DONE: set(),
    RequestState.ERROR: set(),
}


class ProvisioningFlights:
    """
    One create-record request per new-record name for the lifetime of a run.
    Every caller asking for the same name awaits the same request, so the
    result (id or error) is shared.
    """

    def __init__(self):
        self._futures: Dict[str, asyncio.Future] = {}
        self._states: Dict[str, RequestState] = {}

    def state(self, name: str) -> RequestState:
        return self._states.get(name, RequestState.IDLE)

    def _move(self, name: str, new_state: RequestState) -> None:
        current = self.state(name)
        if new_state not in _REQUEST_TRANSITIONS[current]:
            raise InvalidTransition(f"create record '{name}': {current.value} -> {new_state.value}")
        self._states[name] = new_state

    async def create(self, name: str, request: Callable[[], Awaitable[int]]) -> int:
        future = self._futures.get(name)
        if future is None:
            self._move(name, RequestState.IN_FLIGHT)
            future = asyncio.ensure_future(request())
            self._futures[name] = future
            future.add_done_callback(lambda f, n=name: self._settle(n, f))
        return await future

    def _settle(self, name: str, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            self._move(name, RequestState.ERROR)
        else:
            self._move(name, RequestState.DONE)


# --------------------------------------------------------
# Ticket helpers
# --------------------------------------------------------

def fail_ticket(ticket: FileTicket, reason: str) -> None:
    # FAILED is only reachable through UPLOADING
    if ticket.state == TicketState.PENDING:
        transition(ticket, TicketState.UPLOADING)
    transition(ticket, TicketState.FAILED)
    ticket.error = reason


def _require_owner(tickets: Iterable[FileTicket], owner_reference: Optional[str]) -> None:
    needs_record = any(
        isinstance(t.destination, NewRecord) and t.record_id is None for t in tickets
    )
    if needs_record and not owner_reference:
        raise ValueError("owner reference is required to create records")


def _release_unfinished(tickets: Iterable[FileTicket]) -> None:
    for ticket in tickets:
        if ticket.state != TicketState.COMPLETED:
            ticket.release_source()


async def _estimate_progress(ticket: FileTicket, interval: float) -> None:
    """Approximate progress: the transport reports no byte-level events."""
    while ticket.state == TicketState.UPLOADING and ticket.progress < PROGRESS_CEILING:
        await asyncio.sleep(interval)
        advance_progress(ticket, PROGRESS_STEP, PROGRESS_CEILING)


# --------------------------------------------------------
# Record provisioning
# --------------------------------------------------------

async def provision(
    group: Group,
    client: EvidenceServiceClient,
    owner_reference: Optional[str] = None,
    flights: Optional[ProvisioningFlights] = None,
) -> bool:
    """
    Bind a real record id to every ticket in the group. Returns False when
    the record could not be created; those tickets are then FAILED and the
    group must not be uploaded.
    """
    key = group.key

    if isinstance(key, ExistingRecord):
        # existence is checked by the evidence service at upload time
        for ticket in group.tickets:
            ticket.record_id = key.record_id
        return True

    if not isinstance(key, NewRecord):
        raise TypeError(f"unknown destination key: {key!r}")

    known = next((t.record_id for t in group.tickets if t.record_id is not None), None)
    if known is not None:
        for ticket in group.tickets:
            ticket.record_id = known
        return True

    if not owner_reference:
        raise ValueError("owner reference is required to create records")

    flights = flights or ProvisioningFlights()
    description = f"Item created from bulk upload with {len(group.tickets)} files"

    try:
        record_id = await flights.create(
            key.name,
            lambda: client.create_record(key.name, description, owner_reference),
        )
    except ProvisioningError as e:
        logger.warning("create record '%s' failed: %s", key.name, e)
        record_id = None
    except Exception as e:
        logger.exception("create record '%s' failed unexpectedly: %r", key.name, e)
        record_id = None

    if record_id is None:
        for ticket in group.tickets:
            if ticket.state == TicketState.PENDING:
                fail_ticket(ticket, PROVISION_FAILED)
        return False

    logger.info("created record %s for '%s' (%d files)", record_id, key.name, len(group.tickets))
    for ticket in group.tickets:
        ticket.record_id = record_id
    return True


# --------------------------------------------------------
# Upload executor
# --------------------------------------------------------

async def upload(
    ticket: FileTicket,
    client: EvidenceServiceClient,
    interval: Optional[float] = None,
) -> bool:
    """
    Transfer one PENDING ticket to its bound record. Returns True on success.
    Transfer failures are recorded on the ticket, never raised.
    """
    if ticket.state != TicketState.PENDING:
        raise InvalidTransition(f"ticket {ticket.id} is {ticket.state.value}, expected pending")
    if ticket.record_id is None:
        raise ValueError(f"ticket {ticket.id} has no resolved record")

    if ticket.source is None:
        fail_ticket(ticket, SOURCE_RELEASED)
        return False

    transition(ticket, TicketState.UPLOADING)
    estimator = asyncio.ensure_future(
        _estimate_progress(ticket, interval if interval is not None else PROGRESS_INTERVAL)
    )

    try:
        result = await client.upload_evidence(
            ticket.source,
            filename=ticket.original_name,
            content_type=ticket.content_type,
            record_id=ticket.record_id,
            category=ticket.category,
            ticket_id=ticket.id,
        )
    except asyncio.CancelledError:
        estimator.cancel()
        fail_ticket(ticket, UPLOAD_CANCELLED)
        ticket.release_source()
        raise
    except TransferError as e:
        estimator.cancel()
        fail_ticket(ticket, str(e) or "Upload failed")
        logger.warning("upload failed: ticket=%s file=%s err=%s", ticket.id, ticket.original_name, e)
        return False
    except Exception as e:
        estimator.cancel()
        fail_ticket(ticket, str(e) or type(e).__name__)
        logger.exception("upload failed unexpectedly: ticket=%s file=%s", ticket.id, ticket.original_name)
        return False

    estimator.cancel()
    transition(ticket, TicketState.COMPLETED)
    ticket.result = result
    ticket.release_source()
    logger.info(
        "uploaded ticket=%s file=%s record=%s evidence=%s",
        ticket.id, ticket.original_name, ticket.record_id, result.evidence_id,
    )
    return True


async def retry(
    ticket: FileTicket,
    client: EvidenceServiceClient,
    owner_reference: Optional[str] = None,
    interval: Optional[float] = None,
) -> bool:
    """
    Re-send a FAILED ticket. Intake and resolution are not repeated; a ticket
    whose record was never created gets one more provisioning attempt first.
    """
    if ticket.state != TicketState.FAILED:
        raise InvalidTransition(f"ticket {ticket.id} is {ticket.state.value}; only failed tickets can be retried")
    if ticket.destination is None:
        raise ValueError(f"ticket {ticket.id} has no destination")
    _require_owner([ticket], owner_reference)

    transition(ticket, TicketState.PENDING)

    if ticket.record_id is None:
        if not await provision(Group(key=ticket.destination, tickets=[ticket]), client, owner_reference):
            return False

    return await upload(ticket, client, interval)


# --------------------------------------------------------
# Batch runner
# --------------------------------------------------------

async def _process_group(batch, group, client, flights, interval) -> None:
    if not await provision(group, client, batch.owner_reference, flights):
        return

    for ticket in group.tickets:
        if batch.discarded:
            return
        if ticket.state == TicketState.PENDING:
            await upload(ticket, client, interval)


async def _process_groups_bounded(batch, groups, client, flights, interval, concurrency) -> None:
    limiter = asyncio.Semaphore(concurrency)

    async def _upload_one(ticket):
        async with limiter:
            if not batch.discarded and ticket.state == TicketState.PENDING:
                await upload(ticket, client, interval)

    async def _one_group(group):
        if await provision(group, client, batch.owner_reference, flights):
            await asyncio.gather(*(_upload_one(t) for t in group.tickets))

    await asyncio.gather(*(_one_group(g) for g in groups))


async def _process(batch, groups, client, interval, concurrency) -> None:
    flights = ProvisioningFlights()

    if concurrency <= 1:
        for i, group in enumerate(groups, 1):
            if batch.discarded:
                break
            logger.info(
                "batch %s group %d/%d -> %s (%d files)",
                batch.id, i, len(groups), group.describe(), len(group.tickets),
            )
            await _process_group(batch, group, client, flights, interval)
    else:
        await _process_groups_bounded(batch, groups, client, flights, interval, concurrency)


async def _run(batch: EvidenceBatch, groups: List[Group], client, interval, concurrency) -> BatchSummary:
    if batch.running:
        raise EvidenceError(f"batch {batch.id} already has an active run")

    task = asyncio.ensure_future(_process(batch, groups, client, interval, concurrency))
    batch.bind_run(task)

    try:
        await task
    except asyncio.CancelledError:
        _release_unfinished(t for g in groups for t in g.tickets)
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
        logger.warning("batch %s run cancelled", batch.id)
    finally:
        batch.release_run()

    summary = snapshot(batch.tickets, batch.id)
    logger.info(
        "batch %s run complete: completed=%d failed=%d rejected=%d",
        batch.id, summary.counts.completed, summary.counts.failed, summary.counts.rejected,
    )
    return summary


def check_run(batch: EvidenceBatch, resolution: Resolution) -> None:
    """Preconditions for a run; raises before anything is sent."""
    if batch.running:
        raise EvidenceError(f"batch {batch.id} already has an active run")
    if batch.discarded:
        raise EvidenceError(f"batch {batch.id} has been discarded")
    if not resolution.can_proceed:
        raise UnassignedTicketsError([t.id for t in resolution.unassigned])
    _require_owner((t for g in resolution.groups for t in g.tickets), batch.owner_reference)


def select_retry(batch: EvidenceBatch, ticket_ids: Optional[Iterable[str]] = None) -> List[FileTicket]:
    """Pick the FAILED tickets to retry and check the retry may start."""
    if batch.running:
        raise EvidenceError(f"batch {batch.id} already has an active run")
    if batch.discarded:
        raise EvidenceError(f"batch {batch.id} has been discarded")

    if ticket_ids is None:
        targets = [t for t in batch.tickets if t.state == TicketState.FAILED]
    else:
        targets = [batch.get(ticket_id) for ticket_id in ticket_ids]
        not_failed = [t.id for t in targets if t.state != TicketState.FAILED]
        if not_failed:
            raise InvalidTransition(f"only failed tickets can be retried: {', '.join(not_failed)}")

    unassigned = [t.id for t in targets if t.destination is None]
    if unassigned:
        raise UnassignedTicketsError(unassigned)

    _require_owner(targets, batch.owner_reference)
    return targets


async def run_batch(
    batch: EvidenceBatch,
    client: EvidenceServiceClient,
    resolution: Optional[Resolution] = None,
    *,
    concurrency: Optional[int] = None,
    interval: Optional[float] = None,
) -> BatchSummary:
    """
    Provision and upload every group of a batch.

    Groups run strictly in order and, by default, tickets inside a group run
    one at a time. No ticket or group failure stops the run; the returned
    summary carries every outcome. Preconditions (unassigned tickets, missing
    owner for new records, a run already active) raise before any request
    is made.
    """
    resolution = resolution or resolve(batch.tickets)
    check_run(batch, resolution)

    return await _run(
        batch,
        resolution.groups,
        client,
        interval,
        concurrency if concurrency is not None else UPLOAD_CONCURRENCY,
    )


async def retry_failed(
    batch: EvidenceBatch,
    client: EvidenceServiceClient,
    ticket_ids: Optional[Iterable[str]] = None,
    *,
    concurrency: Optional[int] = None,
    interval: Optional[float] = None,
) -> BatchSummary:
    """
    Retry FAILED tickets (all of them, or the given ids). Tickets whose
    record was never created are re-provisioned once per name.
    """
    targets = select_retry(batch, ticket_ids)

    for ticket in targets:
        transition(ticket, TicketState.PENDING)

    resolution = resolve(targets)
    logger.info("batch %s retrying %d ticket(s) in %d group(s)", batch.id, len(targets), len(resolution.groups))

    return await _run(
        batch,
        resolution.groups,
        client,
        interval,
        concurrency if concurrency is not None else UPLOAD_CONCURRENCY,
    )
