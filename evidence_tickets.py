# evidence_tickets.py

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import BinaryIO, Optional, Union

logger = logging.getLogger(__name__)


# --------------------------------------------------------
# Errors
# --------------------------------------------------------

class EvidenceError(Exception):
    """Base class for evidence pipeline errors."""


class ValidationError(EvidenceError):
    """A file failed local checks (size or type). Encoded as REJECTED, never retried."""


class ProvisioningError(EvidenceError):
    """The create-record call for a new destination failed."""


class TransferError(EvidenceError):
    """The upload call for one file failed."""


class InvalidTransition(EvidenceError):
    pass


class UnassignedTicketsError(EvidenceError):
    """Raised before a run starts when eligible tickets have no destination."""

    def __init__(self, ticket_ids: list[str]):
        self.ticket_ids = ticket_ids
        super().__init__(f"{len(ticket_ids)} file(s) have no destination assigned")


# --------------------------------------------------------
# States + transitions
# --------------------------------------------------------

class TicketState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATES = {TicketState.COMPLETED, TicketState.FAILED, TicketState.REJECTED}

LEGAL_TRANSITIONS = {
    TicketState.PENDING: {TicketState.UPLOADING},
    TicketState.UPLOADING: {TicketState.COMPLETED, TicketState.FAILED},
    TicketState.FAILED: {TicketState.PENDING},
    TicketState.COMPLETED: set(),
    TicketState.REJECTED: set(),
}

CATEGORIES = ("photo", "video", "document")


# --------------------------------------------------------
# Destination keys
# --------------------------------------------------------

@dataclass(frozen=True)
class ExistingRecord:
    record_id: int

    def describe(self) -> str:
        return f"item #{self.record_id}"


@dataclass(frozen=True)
class NewRecord:
    name: str

    def describe(self) -> str:
        return f"new item '{self.name}'"


DestinationKey = Union[ExistingRecord, NewRecord]


def describe_destination(key: Optional[DestinationKey]) -> str:
    return key.describe() if key is not None else "unassigned"


# --------------------------------------------------------
# Tickets
# --------------------------------------------------------

@dataclass
class UploadResult:
    evidence_id: int
    stored_location: str
    category: str
    created_at: datetime
    original_name: str
    ticket_id: str


@dataclass
class FileTicket:
    original_name: str
    byte_size: int
    content_type: str
    category: str
    source: Optional[BinaryIO] = None
    state: TicketState = TicketState.PENDING
    progress: int = 0
    error: Optional[str] = None
    destination: Optional[DestinationKey] = None
    record_id: Optional[int] = None
    preview: Optional[str] = None
    result: Optional[UploadResult] = None
    attempts: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def release_source(self) -> None:
        if self.source is not None:
            try:
                self.source.close()
            finally:
                self.source = None


def transition(ticket: FileTicket, new_state: TicketState) -> None:
    """
    Move a ticket to new_state, enforcing the ticket lifecycle:
      PENDING -> UPLOADING -> COMPLETED | FAILED, and FAILED -> PENDING (retry).
    Entering UPLOADING always restarts progress at 0.
    """
    allowed = LEGAL_TRANSITIONS[ticket.state]
    if new_state not in allowed:
        raise InvalidTransition(
            f"ticket {ticket.id}: {ticket.state.value} -> {new_state.value} is not allowed"
        )

    ticket.state = new_state
    if new_state == TicketState.UPLOADING:
        ticket.progress = 0
        ticket.attempts += 1
    elif new_state == TicketState.COMPLETED:
        ticket.progress = 100
        ticket.error = None
    elif new_state == TicketState.FAILED:
        ticket.progress = 0
    elif new_state == TicketState.PENDING:
        ticket.progress = 0
        ticket.error = None


def advance_progress(ticket: FileTicket, step: int, ceiling: int) -> None:
    # Only moves forward, and only while the transfer is outstanding
    if ticket.state != TicketState.UPLOADING:
        return
    ticket.progress = max(ticket.progress, min(ticket.progress + step, ceiling))


# --------------------------------------------------------
# Batch (owned ticket collection)
# --------------------------------------------------------

class EvidenceBatch:
    def __init__(self, owner_reference: Optional[str] = None, batch_id: Optional[str] = None):
        self.id = batch_id or uuid.uuid4().hex
        self.owner_reference = owner_reference
        self.tickets: list[FileTicket] = []
        self.created_at = datetime.utcnow()
        self.discarded = False
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self.tickets)

    def __iter__(self):
        return iter(self.tickets)

    def add(self, tickets: list[FileTicket]) -> None:
        if self.discarded:
            raise EvidenceError(f"batch {self.id} has been discarded")
        self.tickets.extend(tickets)

    def get(self, ticket_id: str) -> FileTicket:
        for ticket in self.tickets:
            if ticket.id == ticket_id:
                return ticket
        raise KeyError(ticket_id)

    def remove(self, ticket_id: str) -> FileTicket:
        ticket = self.get(ticket_id)
        if ticket.state == TicketState.UPLOADING or ticket.attempts > 0:
            raise EvidenceError(f"ticket {ticket_id} has already been uploaded or attempted")
        self.tickets.remove(ticket)
        ticket.release_source()
        return ticket

    # ---- run scope ----

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def bind_run(self, task: asyncio.Task) -> None:
        if self.running:
            raise EvidenceError(f"batch {self.id} already has an active run")
        self._task = task

    def release_run(self) -> None:
        self._task = None

    def cancel(self) -> bool:
        if not self.running:
            return False
        self._task.cancel()
        return True

    def discard(self) -> None:
        """Cancel any active run and release every held file handle."""
        self.cancel()
        for ticket in self.tickets:
            ticket.release_source()
        self.discarded = True
        logger.info("batch %s discarded (%d tickets)", self.id, len(self.tickets))
