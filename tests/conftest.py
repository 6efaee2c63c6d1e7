"""Pytest configuration and shared fixtures."""
import os

# Settings are cached on first import, so these must be set before turnstile loads
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SMTP_USER", "")
os.environ.setdefault("SMTP_PASSWORD", "")

from datetime import date, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

import turnstile.models  # noqa: F401
from turnstile.config import get_settings
from turnstile.database import Base, make_engine
from turnstile.models.user import User, UserRole
from turnstile.services.auth import AuthService
from turnstile.services.events import EventService
from turnstile.services.errors import GatewayRejected
from turnstile.services.gateway import GatewayPayment, GatewayRefund, PaymentGateway
from turnstile.services.notifier import Notifier

PASSWORD = "correct-horse-battery"
PASSWORD_HASH = AuthService.get_password_hash(PASSWORD)
WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


class FakeGateway(PaymentGateway):
    """
    Records refund calls. Set `error` to make the next refund calls raise it.
    Charges start unpaid; `pay()` plays the buyer completing one.
    """

    def __init__(self):
        self.calls = []
        self.error = None
        self.payments = {}

    def create_payment(self, amount_minor_units, metadata):
        payment_id = f"pi_test_{len(self.payments) + 1}"
        payment = GatewayPayment(
            id=payment_id,
            status="requires_payment_method",
            amount=amount_minor_units,
            currency=get_settings().currency,
            client_secret=f"{payment_id}_secret",
            metadata={k: str(v) for k, v in metadata.items()}
        )
        self.payments[payment_id] = payment
        return payment

    def retrieve_payment(self, charge_ref):
        if charge_ref not in self.payments:
            raise GatewayRejected(f"No such payment_intent: '{charge_ref}'")
        return self.payments[charge_ref]

    def pay(self, order_reference, amount=None):
        for payment in self.payments.values():
            if payment.metadata.get("order_reference") == order_reference:
                payment.status = "succeeded"
                if amount is not None:
                    payment.amount = amount
                return payment
        raise KeyError(order_reference)

    def initiate_refund(self, charge_ref, amount_minor_units, metadata):
        self.calls.append({
            "charge_ref": charge_ref,
            "amount": amount_minor_units,
            "metadata": dict(metadata)
        })
        if self.error is not None:
            raise self.error
        return GatewayRefund(id=f"rfnd_test_{len(self.calls)}", status="pending")


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.purchases = []
        self.refund_updates = []
        self.fail = fail

    def send_ticket_purchased(self, user, tickets, event):
        if self.fail:
            raise RuntimeError("mail server down")
        self.purchases.append((user.id, [t.code for t in tickets], event.id))

    def send_refund_status_changed(self, user, ticket, refund):
        if self.fail:
            raise RuntimeError("mail server down")
        self.refund_updates.append((user.id, ticket.id, refund.status))


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several threads can hold their own connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'turnstile.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def make_user(db, email, role=UserRole.GUEST, name=None):
    user = User(
        email=email,
        name=name or email.split("@")[0].title(),
        hashed_password=PASSWORD_HASH,
        role=role
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def guest(db_session):
    return make_user(db_session, "asha@example.com")


@pytest.fixture
def other_guest(db_session):
    return make_user(db_session, "ravi@example.com")


@pytest.fixture
def checker(db_session):
    return make_user(db_session, "gate@example.com", UserRole.QRCHECKER)


@pytest.fixture
def manager(db_session):
    return make_user(db_session, "manager@example.com", UserRole.MANAGER)


@pytest.fixture
def admin(db_session):
    return make_user(db_session, "admin@example.com", UserRole.ADMIN)


def create_event(db, capacity=100, days_ahead=30, **overrides):
    values = dict(
        name="Navratri Garba Night",
        venue="Riverside Grounds",
        event_date=date.today() + timedelta(days=days_ahead),
        start_time="19:00",
        end_time="23:30",
        unit_price=500.0,
        group_price=450.0,
        group_threshold=6,
        total_capacity=capacity
    )
    values.update(overrides)
    return EventService(db).create(**values)


@pytest.fixture
def event(db_session):
    return create_event(db_session)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()
