"""
Tests for the refund orchestrator.

These tests prove:
- A refund is initiated at most once per ticket, even when requests race
- Gateway failures are recorded on the refund and leave the ticket valid
- Replayed webhooks change state once and log once
- The ticket is cancelled only after the gateway accepted the refund
"""
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from turnstile.helpers import utcnow
from turnstile.models.refund import Refund, RefundStatus, RefundStatusEntry, RefundWebhookEvent
from turnstile.models.ticket import Ticket, TicketStatus
from turnstile.services.checkin import CheckInStateMachine
from turnstile.services.errors import (
    DuplicateRefund, GatewayRejected, GatewayTimeout, PermissionDenied,
    RefundIneligible, RefundNotFound, TicketCancelled
)
from turnstile.services.gateway import parse_webhook_event
from turnstile.services.issuance import IssuanceManager
from turnstile.services.refunds import RefundOrchestrator

from conftest import FakeGateway, RecordingNotifier, create_event


def webhook(event_type, gateway_refund_id, event_id, status=None, reference=None, error=None):
    entity = {"id": gateway_refund_id, "status": status}
    if reference:
        entity["notes"] = {"refund_reference": reference}
    if error:
        entity["error_description"] = error
    body = {"id": event_id, "event": event_type, "payload": {"refund": {"entity": entity}}}
    return parse_webhook_event(json.dumps(body).encode(), {})


@pytest.fixture
def ticket(db_session, event, guest):
    return IssuanceManager(db_session).issue(
        event.id, guest.id, 1, 500.0, charge_ref="pi_paid", order_ref="order_9"
    )[0]


@pytest.fixture
def orchestrator(db_session, gateway, notifier):
    return RefundOrchestrator(
        db_session, gateway, notifier,
        processing_fee=40.0, minimum_refund_amount=1.0, refund_cutoff_days=10
    )


def history(db_session, refund):
    return [
        entry.status for entry in db_session.query(RefundStatusEntry).filter(
            RefundStatusEntry.refund_id == refund.id
        ).order_by(RefundStatusEntry.id)
    ]


class TestInitiate:
    def test_successful_initiation(self, db_session, orchestrator, gateway, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        assert refund.status == RefundStatus.PROCESSING
        assert refund.original_amount == 500.0
        assert refund.refund_amount == 460.0
        assert refund.gateway_refund_id == "rfnd_test_1"
        assert gateway.calls[0]["charge_ref"] == "pi_paid"
        assert gateway.calls[0]["amount"] == 46000
        assert gateway.calls[0]["metadata"]["refund_reference"] == refund.reference
        assert history(db_session, refund) == [RefundStatus.PENDING, RefundStatus.PROCESSING]

        db_session.refresh(ticket)
        assert ticket.status == TicketStatus.CANCELLED
        assert ticket.cancellation_reason == "Cannot attend"

    def test_refund_amount_has_a_floor(self, db_session, gateway, ticket, guest):
        orchestrator = RefundOrchestrator(
            db_session, gateway, processing_fee=40.0, minimum_refund_amount=1.0
        )
        db_session.query(Ticket).filter(Ticket.id == ticket.id).update({Ticket.price: 30.0})
        db_session.commit()

        refund = orchestrator.initiate(ticket.id, guest.id, "Changed plans")
        assert refund.refund_amount == 1.0

    def test_other_users_ticket(self, orchestrator, ticket, other_guest):
        with pytest.raises(PermissionDenied):
            orchestrator.initiate(ticket.id, other_guest.id, "Not mine")

    def test_used_ticket_is_ineligible(self, db_session, orchestrator, gateway, ticket, guest, checker):
        CheckInStateMachine(db_session).check_in(ticket.code, checker.id)

        with pytest.raises(RefundIneligible):
            orchestrator.initiate(ticket.id, guest.id, "Too late")
        assert gateway.calls == []

    def test_cancelled_ticket(self, db_session, orchestrator, ticket, guest):
        db_session.query(Ticket).filter(Ticket.id == ticket.id).update(
            {Ticket.status: TicketStatus.CANCELLED}
        )
        db_session.commit()

        with pytest.raises(TicketCancelled):
            orchestrator.initiate(ticket.id, guest.id, "Again")

    def test_manual_ticket_has_no_charge(self, db_session, orchestrator, event, guest):
        manual = IssuanceManager(db_session).issue(
            event.id, guest.id, 1, 0.0, purchase_method="manual"
        )[0]

        with pytest.raises(RefundIneligible):
            orchestrator.initiate(manual.id, guest.id, "Comp ticket")

    def test_refund_cutoff(self, db_session, gateway, guest):
        event = create_event(db_session, days_ahead=3)
        ticket = IssuanceManager(db_session).issue(event.id, guest.id, 1, 500.0, charge_ref="pi_x")[0]
        orchestrator = RefundOrchestrator(db_session, gateway, refund_cutoff_days=10)

        with pytest.raises(RefundIneligible):
            orchestrator.initiate(ticket.id, guest.id, "Too close")

    def test_second_request_is_duplicate(self, orchestrator, ticket, guest):
        orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        with pytest.raises(DuplicateRefund):
            orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

    def test_failed_refund_blocks_a_retry(self, orchestrator, gateway, ticket, guest):
        gateway.error = GatewayRejected("Charge already refunded")
        orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        gateway.error = None

        with pytest.raises(DuplicateRefund):
            orchestrator.initiate(ticket.id, guest.id, "Try again")


class TestGatewayFailure:
    def test_rejection_is_recorded(self, db_session, orchestrator, gateway, notifier, ticket, guest):
        gateway.error = GatewayRejected("The charge has been disputed")
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "The charge has been disputed"
        assert history(db_session, refund) == [RefundStatus.PENDING, RefundStatus.FAILED]
        assert notifier.refund_updates[-1][2] == RefundStatus.FAILED

        db_session.refresh(ticket)
        assert ticket.status == TicketStatus.ACTIVE

    def test_timeout_is_recorded(self, db_session, orchestrator, gateway, ticket, guest):
        gateway.error = GatewayTimeout()
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "gateway timeout"
        db_session.refresh(ticket)
        assert ticket.status == TicketStatus.ACTIVE

    def test_gateway_is_called_once(self, orchestrator, gateway, ticket, guest):
        gateway.error = GatewayTimeout()
        orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        assert len(gateway.calls) == 1

    def test_webhook_overrules_timeout(self, db_session, orchestrator, gateway, ticket, guest):
        """The gateway processed the refund even though our call timed out."""
        gateway.error = GatewayTimeout()
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        orchestrator.handle_webhook(webhook(
            "refund.processed", "rfnd_late", "evt_late", status="processed",
            reference=refund.reference
        ))

        db_session.refresh(refund)
        db_session.refresh(ticket)
        assert refund.status == RefundStatus.PROCESSED
        assert refund.gateway_refund_id == "rfnd_late"
        assert refund.failure_reason is None
        assert ticket.status == TicketStatus.CANCELLED

    def test_webhook_does_not_revive_rejected_refund(self, db_session, orchestrator, gateway, ticket, guest):
        gateway.error = GatewayRejected("Insufficient balance")
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        orchestrator.handle_webhook(webhook(
            "refund.processed", "rfnd_x", "evt_x", status="processed", reference=refund.reference
        ))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.FAILED


class TestWebhooks:
    def test_processed_webhook(self, db_session, orchestrator, notifier, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook("refund.processed", refund.gateway_refund_id, "evt_1", "processed"))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.PROCESSED
        assert refund.processed_at is not None
        assert notifier.refund_updates[-1][2] == RefundStatus.PROCESSED

    def test_replayed_webhook_applies_once(self, db_session, orchestrator, ticket, guest):
        """500 ticket, 40 fee: 460 refunded, processed once however often the gateway retries."""
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        assert refund.refund_amount == 460.0

        event = webhook("refund.processed", refund.gateway_refund_id, "evt_dup", "processed")
        orchestrator.handle_webhook(event)
        db_session.refresh(refund)
        processed_at = refund.processed_at

        orchestrator.handle_webhook(event)
        orchestrator.handle_webhook(event)
        db_session.refresh(refund)

        assert refund.status == RefundStatus.PROCESSED
        assert refund.processed_at == processed_at
        assert history(db_session, refund).count(RefundStatus.PROCESSED) == 1
        assert db_session.query(RefundWebhookEvent).filter(
            RefundWebhookEvent.refund_id == refund.id
        ).count() == 1

    def test_distinct_processed_events_keep_first_timestamp(self, db_session, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook("refund.processed", refund.gateway_refund_id, "evt_a", "processed"))
        db_session.refresh(refund)
        processed_at = refund.processed_at

        orchestrator.handle_webhook(webhook("refund.processed", refund.gateway_refund_id, "evt_b", "processed"))
        db_session.refresh(refund)

        assert refund.processed_at == processed_at
        assert history(db_session, refund).count(RefundStatus.PROCESSED) == 1
        assert len(refund.webhook_events) == 2

    def test_failed_webhook_records_reason(self, db_session, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook(
            "refund.failed", refund.gateway_refund_id, "evt_f", "failed",
            error="Bank account closed"
        ))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "Bank account closed"

    def test_informational_event_only_logged(self, db_session, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook("refund.speed_changed", refund.gateway_refund_id, "evt_s"))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.PROCESSING
        assert len(refund.webhook_events) == 1
        assert history(db_session, refund) == [RefundStatus.PENDING, RefundStatus.PROCESSING]

    def test_out_of_order_failed_after_processed(self, db_session, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook("refund.processed", refund.gateway_refund_id, "evt_1", "processed"))
        orchestrator.handle_webhook(webhook("refund.failed", refund.gateway_refund_id, "evt_0", "failed"))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.PROCESSED

    def test_unmatched_webhook_is_dropped(self, db_session, orchestrator):
        assert orchestrator.handle_webhook(webhook("refund.processed", "rfnd_unknown", "evt_u")) is None
        assert db_session.query(RefundWebhookEvent).count() == 0

    def test_stripe_envelope(self, db_session, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        body = {
            "id": "evt_stripe",
            "type": "charge.refund.updated",
            "data": {"object": {"id": refund.gateway_refund_id, "status": "succeeded", "metadata": {}}}
        }
        orchestrator.handle_webhook(parse_webhook_event(json.dumps(body).encode(), {}))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.PROCESSED

    def test_notification_failure_does_not_fail_webhook(self, db_session, gateway, ticket, guest):
        orchestrator = RefundOrchestrator(db_session, gateway, RecordingNotifier(fail=True))
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook("refund.processed", refund.gateway_refund_id, "evt_1", "processed"))

        db_session.refresh(refund)
        assert refund.status == RefundStatus.PROCESSED

    def test_processed_refund_leaves_used_ticket_alone(self, db_session, orchestrator, gateway, ticket, guest, checker):
        gateway.error = GatewayTimeout()
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        CheckInStateMachine(db_session).check_in(ticket.code, checker.id)

        orchestrator.handle_webhook(webhook(
            "refund.processed", "rfnd_late", "evt_1", "processed", reference=refund.reference
        ))

        db_session.refresh(ticket)
        db_session.refresh(refund)
        assert refund.status == RefundStatus.PROCESSED
        assert ticket.status == TicketStatus.USED


class TestRefundInvariants:
    """At most one refund per ticket, decided by storage."""

    def test_concurrent_initiations(self, session_factory, ticket, guest):
        ticket_id, user_id = ticket.id, guest.id
        gateway = FakeGateway()

        def initiate(_):
            session = session_factory()
            try:
                RefundOrchestrator(session, gateway).initiate(ticket_id, user_id, "Cannot attend")
                return "created"
            except DuplicateRefund:
                return "duplicate"
            except TicketCancelled:
                return "cancelled"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(initiate, range(4)))

        assert results.count("created") == 1
        session = session_factory()
        try:
            assert session.query(Refund).filter(Refund.ticket_id == ticket_id).count() == 1
        finally:
            session.close()
        assert len(gateway.calls) == 1

    def test_storage_rejects_second_refund_row(self, db_session, orchestrator, ticket, guest):
        """Even with the pre-check skipped, the unique ticket id refuses a second row."""
        orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        db_session.add(Refund(
            ticket_id=ticket.id, user_id=guest.id, charge_ref="pi_paid",
            original_amount=500.0, processing_fee=40.0, refund_amount=460.0, reason="again"
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestAdministration:
    def test_cancel_processing_refund(self, db_session, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        cancelled = orchestrator.cancel(refund.reference, "Customer called back")

        assert cancelled.status == RefundStatus.CANCELLED
        assert history(db_session, refund)[-1] == RefundStatus.CANCELLED

    def test_cannot_cancel_terminal_refund(self, orchestrator, ticket, guest):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")
        orchestrator.handle_webhook(webhook("refund.processed", refund.gateway_refund_id, "evt_1", "processed"))

        with pytest.raises(RefundIneligible):
            orchestrator.cancel(refund.reference)

    def test_sweep_fails_stale_pending(self, db_session, orchestrator, ticket, guest):
        now = utcnow()
        stale = Refund(
            ticket_id=ticket.id, user_id=guest.id, charge_ref="pi_paid",
            original_amount=500.0, processing_fee=40.0, refund_amount=460.0,
            reason="crashed", status=RefundStatus.PENDING,
            created_at=now - timedelta(hours=2), updated_at=now - timedelta(hours=2)
        )
        db_session.add(stale)
        db_session.commit()

        assert orchestrator.sweep_stale_pending(older_than_minutes=30) == 1
        db_session.refresh(stale)
        assert stale.status == RefundStatus.FAILED
        assert stale.failure_reason == "initiation interrupted"

        assert orchestrator.sweep_stale_pending(older_than_minutes=30) == 0

    def test_webhook_overrules_interrupted_refund(self, db_session, orchestrator, ticket, guest):
        """The gateway refunded a charge whose request was swept as interrupted."""
        now = utcnow()
        stale = Refund(
            ticket_id=ticket.id, user_id=guest.id, charge_ref="pi_paid",
            original_amount=500.0, processing_fee=40.0, refund_amount=460.0,
            reason="crashed", status=RefundStatus.PENDING,
            created_at=now - timedelta(hours=2), updated_at=now - timedelta(hours=2)
        )
        db_session.add(stale)
        db_session.commit()
        orchestrator.sweep_stale_pending(older_than_minutes=30)

        orchestrator.handle_webhook(webhook(
            "refund.processed", "rfnd_after_crash", "evt_after_crash",
            status="processed", reference=stale.reference
        ))

        db_session.refresh(stale)
        db_session.refresh(ticket)
        assert stale.status == RefundStatus.PROCESSED
        assert stale.gateway_refund_id == "rfnd_after_crash"
        assert stale.failure_reason is None
        assert ticket.status == TicketStatus.CANCELLED

    def test_late_gateway_answer_recovers_swept_refund(
        self, db_session, session_factory, notifier, ticket, guest
    ):
        class SlowGateway(FakeGateway):
            def initiate_refund(self, charge_ref, amount_minor_units, metadata):
                # The sweep runs while the gateway is still answering
                session = session_factory()
                try:
                    RefundOrchestrator(session, self).sweep_stale_pending(older_than_minutes=-1)
                finally:
                    session.close()
                return super().initiate_refund(charge_ref, amount_minor_units, metadata)

        refund = RefundOrchestrator(
            db_session, SlowGateway(), notifier, refund_cutoff_days=0
        ).initiate(ticket.id, guest.id, "Cannot attend")

        db_session.refresh(ticket)
        assert refund.status == RefundStatus.PROCESSING
        assert refund.failure_reason is None
        assert history(db_session, refund) == [
            RefundStatus.PENDING, RefundStatus.FAILED, RefundStatus.PROCESSING
        ]
        assert ticket.status == TicketStatus.CANCELLED

    def test_sweep_ignores_fresh_pending(self, db_session, orchestrator, ticket, guest):
        db_session.add(Refund(
            ticket_id=ticket.id, user_id=guest.id, charge_ref="pi_paid",
            original_amount=500.0, processing_fee=40.0, refund_amount=460.0,
            reason="in flight", status=RefundStatus.PENDING, created_at=utcnow()
        ))
        db_session.commit()

        assert orchestrator.sweep_stale_pending(older_than_minutes=30) == 0

    def test_get_for_user_hides_other_refunds(self, orchestrator, ticket, guest, other_guest, manager):
        refund = orchestrator.initiate(ticket.id, guest.id, "Cannot attend")

        assert orchestrator.get_for_user(refund.reference, guest).id == refund.id
        assert orchestrator.get_for_user(refund.reference, manager).id == refund.id
        with pytest.raises(RefundNotFound):
            orchestrator.get_for_user(refund.reference, other_guest)
