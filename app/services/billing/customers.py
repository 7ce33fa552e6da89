"""Customer-level billing records: profiles, running credit totals, subscriptions."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import (
    BillingSubscription,
    CustomerBillingProfile,
    CustomerCredit,
    SubscriptionStatus,
)
from app.schemas.billing import CustomerBillingProfileUpsert, SubscriptionCreate
from app.services.billing.errors import BillingNotFound
from app.services.common import ZERO, coerce_uuid, round_money


class CustomerProfiles:
    @staticmethod
    def get(db: Session, customer_id: str) -> CustomerBillingProfile | None:
        return db.get(CustomerBillingProfile, customer_id)

    @staticmethod
    def payment_terms(db: Session, customer_id: str) -> str:
        profile = db.get(CustomerBillingProfile, customer_id)
        if profile and profile.payment_terms:
            return profile.payment_terms
        return settings.default_payment_terms

    @staticmethod
    def upsert(db: Session, customer_id: str, payload: CustomerBillingProfileUpsert):
        profile = db.get(CustomerBillingProfile, customer_id)
        data = payload.model_dump()
        data["payment_terms"] = data["payment_terms"].upper()
        data["pricing_tier"] = data["pricing_tier"].upper()
        if profile is None:
            profile = CustomerBillingProfile(customer_id=customer_id, **data)
            db.add(profile)
        else:
            for key, value in data.items():
                setattr(profile, key, value)
        db.commit()
        db.refresh(profile)
        return profile


class CustomerCredits:
    @staticmethod
    def _get_or_create(db: Session, customer_id: str) -> CustomerCredit:
        credit = db.get(CustomerCredit, customer_id)
        if credit is None:
            credit = CustomerCredit(
                customer_id=customer_id, total_paid=ZERO, total_refunded=ZERO
            )
            db.add(credit)
        return credit

    @staticmethod
    def record_payment(db: Session, customer_id: str, amount: Decimal, at: datetime):
        credit = CustomerCredits._get_or_create(db, customer_id)
        credit.total_paid = round_money((credit.total_paid or ZERO) + amount)
        credit.last_payment_at = at
        return credit

    @staticmethod
    def record_refund(db: Session, customer_id: str, amount: Decimal):
        credit = CustomerCredits._get_or_create(db, customer_id)
        credit.total_refunded = round_money((credit.total_refunded or ZERO) + abs(amount))
        return credit


class Subscriptions:
    @staticmethod
    def create(db: Session, payload: SubscriptionCreate) -> BillingSubscription:
        data = payload.model_dump()
        if data.get("billing_address") is not None:
            data["billing_address"] = payload.billing_address.model_dump()
        data["currency"] = (data.get("currency") or settings.default_currency).upper()
        subscription = BillingSubscription(**data, status=SubscriptionStatus.active)
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def get(db: Session, subscription_id) -> BillingSubscription:
        subscription = db.get(BillingSubscription, coerce_uuid(subscription_id))
        if not subscription:
            raise BillingNotFound(
                f"Subscription not found: {subscription_id}",
                {"subscription_id": str(subscription_id)},
            )
        return subscription

    @staticmethod
    def due_for_billing(db: Session, now: datetime) -> list[BillingSubscription]:
        return (
            db.query(BillingSubscription)
            .filter(BillingSubscription.status == SubscriptionStatus.active)
            .filter(BillingSubscription.next_billing_date <= now)
            .order_by(BillingSubscription.next_billing_date.asc())
            .all()
        )
