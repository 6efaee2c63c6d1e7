"""
Check-in state machine for tickets.

active -> used is the only transition made here, and it is made by a single
conditional UPDATE. Of two scanners racing on one code exactly one wins; the
other sees AlreadyUsed with the winner's scan time.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from turnstile.helpers import short_code, utcnow
from turnstile.models.ticket import Ticket, TicketStatus
from turnstile.models.user import UserRole
from turnstile.services.codes import CodeGenerator
from turnstile.services.errors import (
    AlreadyUsed, InvalidTicketCode, TicketCancelled, TicketNotFound, TicketingError
)

logger = logging.getLogger(__name__)

CHECK_IN_ROLES = (UserRole.QRCHECKER, UserRole.MANAGER, UserRole.ADMIN)


class CheckInStateMachine:
    def __init__(self, db: Session, code_generator: Optional[CodeGenerator] = None):
        self.db = db
        self.codes = code_generator or CodeGenerator()

    def check_in(self, code: str, agent_id: int) -> Ticket:
        """
        Admit the holder of `code`.

        Raises InvalidTicketCode (no lookup made), TicketNotFound, AlreadyUsed
        or TicketCancelled.
        """
        ticket_id = self._lookup(code)

        now = utcnow()
        updated = self.db.query(Ticket).filter(
            Ticket.id == ticket_id,
            Ticket.status == TicketStatus.ACTIVE
        ).update(
            {
                Ticket.status: TicketStatus.USED,
                Ticket.entry_time: now,
                Ticket.scanned_at: now,
                Ticket.scanned_by_id: agent_id
            },
            synchronize_session=False
        )
        self.db.commit()

        ticket = self.db.get(Ticket, ticket_id)
        if updated == 0:
            error = self._rejection(ticket)
            logger.info(f"Check-in refused for {short_code(code)}: {error.code.value}")
            raise error

        logger.info(f"Ticket {short_code(code)} checked in by agent {agent_id}")
        return ticket

    def inspect(self, code: str) -> Ticket:
        """Same checks as check_in, without admitting anyone."""
        ticket_id = self._lookup(code)
        ticket = self.db.get(Ticket, ticket_id)
        if ticket.status != TicketStatus.ACTIVE:
            raise self._rejection(ticket)
        return ticket

    def _lookup(self, code: str) -> int:
        if not self.codes.is_valid_format(code):
            logger.info(f"Rejected malformed ticket code {short_code(code)}")
            raise InvalidTicketCode()

        ticket_id = self.db.query(Ticket.id).filter(Ticket.code == code).scalar()
        if ticket_id is None:
            raise TicketNotFound()
        return ticket_id

    @staticmethod
    def _rejection(ticket: Ticket) -> TicketingError:
        if ticket.status == TicketStatus.USED:
            return AlreadyUsed(ticket.scanned_at)
        if ticket.status == TicketStatus.CANCELLED:
            return TicketCancelled()
        return TicketNotFound()
