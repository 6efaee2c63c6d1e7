"""Collaborators injected into the routers; tests override these."""
from functools import lru_cache

from fastapi import BackgroundTasks

from turnstile.services.gateway import PaymentGateway, StripeGateway
from turnstile.services.notifier import BackgroundNotifier, Notifier


@lru_cache()
def get_gateway() -> PaymentGateway:
    return StripeGateway()


def get_notifier(background_tasks: BackgroundTasks) -> Notifier:
    return BackgroundNotifier(background_tasks)
