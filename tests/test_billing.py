from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from captiondesk.billing import PLANS, BillingService
from captiondesk.errors import BillingNotConfigured, UnknownAccount, UpstreamUnavailable
from captiondesk.models import PlanTier
from captiondesk.storage import MemoryStore


@pytest.fixture()
def billing_store():
    store = MemoryStore()
    store.upsert_account("acct-1", email="ada@example.com", first_name="Ada", last_name="Lovelace")
    return store


@pytest.fixture()
def fake_stripe(monkeypatch):
    calls = {"customers": [], "prices": [], "subscriptions": [], "cancelled": []}
    subscriptions = {}

    def create_customer(**kwargs):
        calls["customers"].append(kwargs)
        return SimpleNamespace(id="cus_123")

    def create_price(**kwargs):
        calls["prices"].append(kwargs)
        return SimpleNamespace(id="price_1")

    def create_subscription(**kwargs):
        calls["subscriptions"].append(kwargs)
        subscription = SimpleNamespace(
            id=f"sub_{len(calls['subscriptions'])}",
            status="incomplete",
            metadata=kwargs.get("metadata", {}),
            latest_invoice={"payment_intent": {"client_secret": "pi_secret"}},
        )
        subscriptions[subscription.id] = subscription
        return subscription

    def cancel_subscription(subscription_id):
        calls["cancelled"].append(subscription_id)

    monkeypatch.setattr(stripe.Customer, "create", create_customer)
    monkeypatch.setattr(stripe.Customer, "retrieve", lambda customer_id: SimpleNamespace(id=customer_id))
    monkeypatch.setattr(stripe.Price, "create", create_price)
    monkeypatch.setattr(stripe.Subscription, "create", create_subscription)
    monkeypatch.setattr(stripe.Subscription, "cancel", cancel_subscription)
    monkeypatch.setattr(stripe.Subscription, "retrieve", lambda subscription_id: subscriptions[subscription_id])
    return SimpleNamespace(calls=calls, subscriptions=subscriptions)


def _service(store, **kwargs):
    kwargs.setdefault("secret_key", "sk_test_123")
    return BillingService(store, **kwargs)


def test_unconfigured_billing_is_refused(billing_store):
    service = BillingService(billing_store, secret_key=None)
    assert service.configured is False
    with pytest.raises(BillingNotConfigured):
        service.create_subscription("acct-1")
    with pytest.raises(BillingNotConfigured):
        service.handle_webhook(b"{}", "sig")


def test_create_subscription_stores_customer_and_subscription(billing_store, fake_stripe):
    result = _service(billing_store).create_subscription("acct-1", "yearly")

    assert result == {"subscription_id": "sub_1", "client_secret": "pi_secret"}
    account = billing_store.get_account("acct-1")
    assert account.stripe_customer_id == "cus_123"
    assert account.stripe_subscription_id == "sub_1"
    assert account.plan_tier is PlanTier.FREE
    assert fake_stripe.calls["customers"][0]["name"] == "Ada Lovelace"
    price = fake_stripe.calls["prices"][0]
    assert price["unit_amount"] == PLANS["yearly"].unit_amount
    assert price["recurring"] == {"interval": "year"}


def test_resubscribing_cancels_previous_subscription(billing_store, fake_stripe):
    service = _service(billing_store)
    service.create_subscription("acct-1")
    service.create_subscription("acct-1")
    assert fake_stripe.calls["cancelled"] == ["sub_1"]
    assert len(fake_stripe.calls["customers"]) == 1
    assert billing_store.get_account("acct-1").stripe_subscription_id == "sub_2"


def test_create_subscription_validation(billing_store, fake_stripe):
    service = _service(billing_store)
    with pytest.raises(ValueError):
        service.create_subscription("acct-1", "weekly")
    with pytest.raises(UnknownAccount):
        service.create_subscription("ghost")
    billing_store.upsert_account("no-email")
    with pytest.raises(ValueError):
        service.create_subscription("no-email")


def test_stripe_failure_is_upstream_error(billing_store, fake_stripe, monkeypatch):
    def broken(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Price, "create", broken)
    with pytest.raises(UpstreamUnavailable):
        _service(billing_store).create_subscription("acct-1")


def test_confirm_payment_requires_active_subscription(billing_store, fake_stripe):
    service = _service(billing_store)
    with pytest.raises(ValueError):
        service.confirm_payment("acct-1")

    service.create_subscription("acct-1", "monthly")
    with pytest.raises(ValueError):
        service.confirm_payment("acct-1")

    fake_stripe.subscriptions["sub_1"].status = "active"
    account = service.confirm_payment("acct-1")
    assert account.plan_tier is PlanTier.PAID

    records = billing_store.list_billing("acct-1")
    assert len(records) == 1
    assert records[0].status == "succeeded"
    assert records[0].amount == Decimal("29.00")

    # confirming twice does not add a second payment record
    service.confirm_payment("acct-1")
    assert len(billing_store.list_billing("acct-1")) == 1


def _event(event_type, obj):
    return {"type": event_type, "data": {"object": obj}}


def test_webhook_rejects_bad_signature(billing_store, monkeypatch):
    def construct_event(payload, sig_header, secret):
        raise stripe.SignatureVerificationError("bad signature", sig_header)

    monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
    service = _service(billing_store, webhook_secret="whsec_test")
    with pytest.raises(ValueError):
        service.handle_webhook(b"{}", "t=1,v1=bad")


def test_webhook_payment_and_cancellation(billing_store, monkeypatch):
    billing_store.update_account("acct-1", stripe_customer_id="cus_123", stripe_subscription_id="sub_9")
    events = [
        _event("invoice.payment_succeeded", {"customer": "cus_123", "subscription": "sub_9"}),
        _event("customer.subscription.deleted", {"customer": "cus_123", "id": "sub_9"}),
        _event("invoice.payment_succeeded", {"customer": "cus_unknown"}),
        _event("charge.refunded", {"customer": "cus_123"}),
    ]
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, sig_header, secret: events.pop(0))
    service = _service(billing_store, webhook_secret="whsec_test")

    assert service.handle_webhook(b"{}", "sig") == {"received": True, "handled": True}
    assert billing_store.get_account("acct-1").plan_tier is PlanTier.PAID

    assert service.handle_webhook(b"{}", "sig") == {"received": True, "handled": True}
    account = billing_store.get_account("acct-1")
    assert account.plan_tier is PlanTier.FREE
    assert account.stripe_subscription_id is None

    assert service.handle_webhook(b"{}", "sig")["handled"] is False
    assert service.handle_webhook(b"{}", "sig")["handled"] is False

    statuses = [record.status for record in billing_store.list_billing("acct-1")]
    assert statuses == ["canceled", "succeeded"]
