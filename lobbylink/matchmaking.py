"""Matchmaking queue tickets over the live connection."""

from __future__ import annotations
import logging
from typing import Any, Callable, Dict, List, Optional

from .client import NotConnectedError
from .connection import ConnectionManager
from .constants import (
    MSG_MATCHMAKER_ADD, MSG_MATCHMAKER_TICKET, MSG_MATCHMAKER_REMOVE, MSG_MATCHMAKER_MATCHED,
    MATCHMAKER_MIN_COUNT, MATCHMAKER_MAX_COUNT, MATCHMAKER_QUERY,
)
from .messages import Icons, format_match_found
from .models import ConnectionState, MatchFound, MatchMode, QueueTicket
from .protocol import ProtocolError, require_str

log = logging.getLogger(__name__)

MatchListener = Callable[[MatchFound], None]


class MatchmakingClient:
    """Enqueue/dequeue requests issued through a ConnectionManager.

    Tickets belong to the connection epoch they were issued on. Any move away
    from CONNECTED voids every outstanding ticket; callers re-enqueue once the
    connection is back. No request is retried here.
    """

    def __init__(self, connection: ConnectionManager):
        self.connection = connection
        self._tickets: Dict[str, QueueTicket] = {}
        self._match_listeners: List[MatchListener] = []
        connection.add_state_listener(self._on_state_change)
        connection.add_event_listener(MSG_MATCHMAKER_MATCHED, self._on_matched)

    @property
    def tickets(self) -> List[QueueTicket]:
        return list(self._tickets.values())

    def is_valid(self, ticket: QueueTicket) -> bool:
        return (
            self._tickets.get(ticket.id) == ticket
            and self.connection.is_connected
            and self.connection.epoch == ticket.epoch
        )

    def add_match_listener(self, listener: MatchListener) -> None:
        self._match_listeners.append(listener)

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        if old is ConnectionState.CONNECTED and self._tickets:
            log.info(f"{Icons.WARNING} Connection left CONNECTED; voiding {len(self._tickets)} ticket(s)")
            self._tickets.clear()

    async def enqueue(self, mode: MatchMode | str) -> QueueTicket:
        """Join the matchmaking queue.

        Raises:
            NotConnectedError: If the connection is not CONNECTED, or drops before the reply
            RealtimeError: If the server rejects the request
            ProtocolError: If the reply carries no ticket"""
        mode = MatchMode.parse(mode)
        if not self.connection.is_connected:
            raise NotConnectedError(f"Cannot enqueue while {self.connection.state.value}")
        epoch = self.connection.epoch
        env = await self.connection.request(MSG_MATCHMAKER_ADD, {
            "min_count": MATCHMAKER_MIN_COUNT,
            "max_count": MATCHMAKER_MAX_COUNT,
            "query": MATCHMAKER_QUERY,
            "string_properties": {"mode": mode.value},
        })
        if env.kind != MSG_MATCHMAKER_TICKET:
            raise ProtocolError(f"Expected {MSG_MATCHMAKER_TICKET}, got {env.kind}")
        ticket_id = require_str(env.body, "ticket")
        if not self.connection.is_connected or self.connection.epoch != epoch:
            raise NotConnectedError("Connection lost before the ticket could be used")
        ticket = QueueTicket(id=ticket_id, mode=mode, epoch=epoch)
        self._tickets[ticket.id] = ticket
        log.info(f"{Icons.QUEUE} Queued for {mode.value} match (ticket {ticket_id[:8]}...)")
        return ticket

    async def dequeue(self, ticket: QueueTicket) -> None:
        """Leave the queue. A ticket that is already void is a no-op.

        The ticket is kept if the server rejects the request, so it can be retried.

        Raises:
            NotConnectedError: If the connection drops while the request is in flight
            RealtimeError: If the server rejects the request"""
        if not self.is_valid(ticket):
            log.debug(f"Dequeue of void ticket {ticket.id[:8]}... skipped")
            return
        await self.connection.request(MSG_MATCHMAKER_REMOVE, {"ticket": ticket.id})
        self._tickets.pop(ticket.id, None)
        log.info(f"{Icons.INFO} Left {ticket.mode.value} queue (ticket {ticket.id[:8]}...)")

    def _on_matched(self, body: Dict[str, Any]) -> None:
        ticket_id = body.get("ticket")
        ticket = self._tickets.pop(ticket_id, None) if isinstance(ticket_id, str) else None
        if ticket is None:
            log.debug(f"Match for unknown ticket {ticket_id!r} ignored")
            return
        match_id: Optional[str] = body.get("match_id")
        if not match_id:
            log.warning(f"{Icons.WARNING} matchmaker_matched without match_id for ticket {ticket.id[:8]}...")
            match_id = ""
        users = body.get("users")
        found = MatchFound(
            ticket=ticket.id,
            match_id=match_id,
            mode=ticket.mode,
            token=body.get("token"),
            users=list(users) if isinstance(users, list) else [],
        )
        log.info(format_match_found(found.match_id or "(token)", found.mode.value))
        for listener in list(self._match_listeners):
            try:
                listener(found)
            except Exception:
                log.exception("Match listener error")
