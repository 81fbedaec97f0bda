# evidence_targets.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from evidence_tickets import (
    DestinationKey,
    EvidenceError,
    ExistingRecord,
    FileTicket,
    TicketState,
)


@dataclass
class Group:
    key: DestinationKey
    tickets: List[FileTicket] = field(default_factory=list)

    def describe(self) -> str:
        return self.key.describe()


@dataclass
class Resolution:
    groups: List[Group]
    unassigned: List[FileTicket]

    @property
    def can_proceed(self) -> bool:
        return not self.unassigned

    @property
    def ticket_count(self) -> int:
        return sum(len(g.tickets) for g in self.groups)


def assign(ticket: FileTicket, key: Optional[DestinationKey]) -> None:
    """
    Set (or re-assign) where a ticket's evidence goes. A re-assignment drops
    any record id bound by an earlier provisioning pass.
    """
    if ticket.state in (TicketState.UPLOADING, TicketState.COMPLETED):
        raise EvidenceError(f"ticket {ticket.id} is {ticket.state.value}; destination is fixed")

    if ticket.destination != key:
        ticket.record_id = None
    ticket.destination = key


def resolve(
    tickets: Iterable[FileTicket],
    assignment: Optional[Mapping[str, DestinationKey]] = None,
) -> Resolution:
    """
    Group PENDING tickets by destination key.

    Groups come out in first-seen key order and keep the tickets' original
    relative order. Tickets without a destination are reported in
    `unassigned`; rejected and already-terminal tickets are ignored.
    """
    tickets = list(tickets)
    if assignment:
        for ticket in tickets:
            if ticket.id in assignment:
                assign(ticket, assignment[ticket.id])

    by_key: Dict[DestinationKey, Group] = {}
    unassigned: List[FileTicket] = []

    for ticket in tickets:
        if ticket.state != TicketState.PENDING:
            continue
        if ticket.destination is None:
            unassigned.append(ticket)
            continue
        group = by_key.get(ticket.destination)
        if group is None:
            group = by_key[ticket.destination] = Group(key=ticket.destination)
        group.tickets.append(ticket)

    # dicts preserve insertion order, which is first-seen order here
    return Resolution(groups=list(by_key.values()), unassigned=unassigned)


def resolve_single(tickets: Iterable[FileTicket], record_id: int) -> Resolution:
    """Single-destination flow: every eligible ticket goes to one existing record."""
    key = ExistingRecord(record_id)
    tickets = list(tickets)
    for ticket in tickets:
        if ticket.state == TicketState.PENDING:
            assign(ticket, key)
    return resolve(tickets)
