"""Stripe subscriptions and the paid-tier switch they drive."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
import structlog

from .errors import BillingNotConfigured, UnknownAccount, UpstreamUnavailable
from .models import Account, PlanTier
from .storage import RecordStore

logger = logging.getLogger(__name__)
struct_logger = structlog.get_logger(__name__)

PRODUCT_NAME = "CaptionDesk Pro"
ACTIVE_SUBSCRIPTION_STATES = {"active", "trialing"}


@dataclass(frozen=True)
class Plan:
    name: str
    unit_amount: int
    interval: str

    @property
    def amount(self) -> Decimal:
        return Decimal(self.unit_amount) / 100


PLANS: Dict[str, Plan] = {
    "monthly": Plan("monthly", 2900, "month"),
    "yearly": Plan("yearly", 29000, "year"),
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, default)


class BillingService:
    def __init__(self, store: RecordStore, *, secret_key: Optional[str], webhook_secret: Optional[str] = None) -> None:
        self.store = store
        self._secret_key = secret_key or None
        self._webhook_secret = webhook_secret or None

    @property
    def configured(self) -> bool:
        return self._secret_key is not None

    def _require_key(self) -> None:
        if self._secret_key is None:
            raise BillingNotConfigured("Stripe is not configured")
        stripe.api_key = self._secret_key

    def _account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise UnknownAccount(account_id)
        return account

    def _ensure_customer(self, account: Account) -> str:
        customer_id = account.stripe_customer_id
        if customer_id:
            try:
                stripe.Customer.retrieve(customer_id)
                return customer_id
            except stripe.InvalidRequestError:
                logger.info("Stored customer %s is invalid, creating a new one", customer_id)
        if not account.email:
            raise ValueError("No email on file for this account")
        customer = stripe.Customer.create(
            email=account.email,
            name=account.display_name,
            metadata={"account_id": account.id},
        )
        self.store.update_account(account.id, stripe_customer_id=customer.id)
        return customer.id

    def create_subscription(self, account_id: str, plan_name: str = "monthly") -> Dict[str, Any]:
        self._require_key()
        plan = PLANS.get(plan_name)
        if plan is None:
            raise ValueError(f"Unknown plan {plan_name!r}")
        account = self._account(account_id)
        try:
            if account.stripe_subscription_id:
                try:
                    stripe.Subscription.cancel(account.stripe_subscription_id)
                except stripe.InvalidRequestError as exc:
                    logger.info("Existing subscription could not be cancelled: %s", exc)
                account = self.store.update_account(account.id, stripe_subscription_id=None)

            customer_id = self._ensure_customer(account)
            price = stripe.Price.create(
                product_data={"name": PRODUCT_NAME},
                unit_amount=plan.unit_amount,
                currency="usd",
                recurring={"interval": plan.interval},
            )
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price.id}],
                payment_behavior="default_incomplete",
                expand=["latest_invoice.payment_intent"],
                metadata={"account_id": account.id, "plan": plan.name},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe subscription for %s failed: %s", account_id, exc)
            raise UpstreamUnavailable("Stripe subscription failed") from exc

        self.store.update_account(account.id, stripe_subscription_id=subscription.id)
        payment_intent = _get(_get(subscription, "latest_invoice"), "payment_intent")
        client_secret = _get(payment_intent, "client_secret")
        struct_logger.info(
            "subscription_created",
            account_id=account.id,
            subscription_id=subscription.id,
            plan=plan.name,
            has_client_secret=client_secret is not None,
        )
        return {"subscription_id": subscription.id, "client_secret": client_secret}

    def confirm_payment(self, account_id: str) -> Account:
        """Flip the account to paid once its subscription is active."""
        self._require_key()
        account = self._account(account_id)
        if not account.stripe_subscription_id:
            raise ValueError("No subscription on file for this account")
        try:
            subscription = stripe.Subscription.retrieve(account.stripe_subscription_id)
        except stripe.StripeError as exc:
            raise UpstreamUnavailable("Stripe subscription lookup failed") from exc
        status = _get(subscription, "status")
        if status not in ACTIVE_SUBSCRIPTION_STATES:
            raise ValueError(f"Subscription is {status}, payment not confirmed")
        return self._activate(account, _get(_get(subscription, "metadata"), "plan"), subscription.id)

    def _activate(self, account: Account, plan_name: Optional[str], payment_id: Optional[str]) -> Account:
        if account.is_paid:
            return account
        updated = self.store.update_account(account.id, plan_tier=PlanTier.PAID)
        plan = PLANS.get(plan_name or "monthly", PLANS["monthly"])
        self.store.create_billing(
            account.id,
            status="succeeded",
            plan=plan.name,
            amount=plan.amount,
            stripe_payment_id=payment_id,
            payment_date=datetime.now(timezone.utc),
        )
        struct_logger.info("plan_activated", account_id=account.id, plan=plan.name)
        return updated

    def _deactivate(self, account: Account, subscription_id: Optional[str]) -> Account:
        updated = self.store.update_account(
            account.id, plan_tier=PlanTier.FREE, stripe_subscription_id=None
        )
        self.store.create_billing(
            account.id,
            status="canceled",
            stripe_payment_id=subscription_id,
            payment_date=datetime.now(timezone.utc),
        )
        struct_logger.info("plan_canceled", account_id=account.id, subscription_id=subscription_id)
        return updated

    def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if self._webhook_secret is None:
            raise BillingNotConfigured("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Stripe webhook verification failed: %s", exc)
            raise ValueError("Invalid Stripe webhook") from exc

        event_type = _get(event, "type")
        obj = _get(_get(event, "data"), "object") or {}
        customer_id = _get(obj, "customer")
        account = self.store.find_account_by_customer(customer_id) if customer_id else None
        struct_logger.info("stripe_event", event_type=event_type, customer_id=customer_id, matched=account is not None)

        if account is None:
            return {"received": True, "handled": False}
        if event_type in {"invoice.payment_succeeded", "invoice.paid"}:
            plan_name = _get(_get(obj, "metadata"), "plan")
            self._activate(account, plan_name, _get(obj, "subscription") or _get(obj, "id"))
            return {"received": True, "handled": True}
        if event_type == "customer.subscription.deleted":
            self._deactivate(account, _get(obj, "id"))
            return {"received": True, "handled": True}
        return {"received": True, "handled": False}
