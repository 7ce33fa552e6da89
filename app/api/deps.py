from fastapi import Header

from app.db import get_db
from app.services.billing import SYSTEM_ACTOR, Actor, BillingService


def get_actor(x_actor_id: str | None = Header(default=None)) -> Actor:
    """Resolve the acting identity from the ``X-Actor-Id`` header.

    Requests without the header run as the system actor.
    """
    if not x_actor_id:
        return SYSTEM_ACTOR
    return Actor.user(x_actor_id)


def get_billing_service() -> BillingService:
    return BillingService()


__all__ = [
    "get_actor",
    "get_billing_service",
    "get_db",
]
