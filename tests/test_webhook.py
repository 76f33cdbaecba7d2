import time
from datetime import datetime

from models import db, DeviceGrant, GrantStatus
from utils import add_months

from conftest import event_payload, new_device_id, sign_payload


def _session(device_id, subscription_id="sub_1", customer_id="cus_1", email="Payer@X.com"):
    metadata = {"device_id": device_id} if device_id else {}
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "customer": customer_id,
        "subscription": subscription_id,
        "customer_details": {"email": email},
        "metadata": metadata,
    }


def _deliver(client, payload, signature=None):
    headers = {"Stripe-Signature": signature if signature is not None else sign_payload(payload)}
    return client.post("/api/stripe-webhook", data=payload, headers=headers,
                       content_type="application/json")


def test_checkout_completed_creates_device_grant(client, processor):
    period_end = int(time.time()) + 86400 * 90
    sub = processor.add_subscription("cus_1", period_end, sub_id="sub_1")
    device_id = new_device_id()

    response = _deliver(client, event_payload("checkout.session.completed", _session(device_id)))

    assert response.status_code == 200
    assert response.get_json() == {"received": True, "type": "checkout.session.completed"}
    grant = DeviceGrant.query.filter_by(device_id=device_id).one()
    assert grant.stripe_subscription_id == sub["id"]
    assert grant.stripe_customer_id == "cus_1"
    assert grant.email == "payer@x.com"
    assert grant.status is GrantStatus.ACTIVE
    assert grant.expires_at == datetime.utcfromtimestamp(period_end)

    check = client.post("/api/check-subscription", json={"deviceId": device_id}).get_json()
    assert check["subscribed"] is True


def test_checkout_without_period_uses_fixed_duration(client, app):
    device_id = new_device_id()

    _deliver(client, event_payload("checkout.session.completed", _session(device_id, "sub_unknown")))

    grant = DeviceGrant.query.filter_by(device_id=device_id).one()
    expected = add_months(datetime.utcnow(), app.config["DEVICE_FALLBACK_MONTHS"])
    assert abs((grant.expires_at - expected).total_seconds()) < 60


def test_replayed_event_keeps_one_row(client, processor):
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 90, sub_id="sub_1")
    device_id = new_device_id()
    payload = event_payload("checkout.session.completed", _session(device_id), event_id="evt_same")

    for _ in range(3):
        assert _deliver(client, payload).status_code == 200

    assert DeviceGrant.query.filter_by(device_id=device_id).count() == 1


def test_new_checkout_replaces_previous_subscription(client, processor):
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 30, sub_id="sub_1")
    later = int(time.time()) + 86400 * 120
    processor.add_subscription("cus_1", later, sub_id="sub_2")
    device_id = new_device_id()

    _deliver(client, event_payload("checkout.session.completed", _session(device_id, "sub_1")))
    _deliver(client, event_payload("checkout.session.completed", _session(device_id, "sub_2")))

    db.session.expire_all()
    grant = DeviceGrant.query.filter_by(device_id=device_id).one()
    assert grant.stripe_subscription_id == "sub_2"
    assert grant.expires_at == datetime.utcfromtimestamp(later)


def test_bad_signature_has_no_effect(client):
    payload = event_payload("checkout.session.completed", _session(new_device_id()))

    response = _deliver(client, payload, sign_payload(payload, secret="whsec_wrong"))

    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_SIGNATURE"
    assert DeviceGrant.query.count() == 0


def test_missing_signature_has_no_effect(client):
    payload = event_payload("checkout.session.completed", _session(new_device_id()))

    response = client.post("/api/stripe-webhook", data=payload, content_type="application/json")

    assert response.status_code == 400
    assert DeviceGrant.query.count() == 0


def test_tampered_payload_is_rejected(client):
    payload = event_payload("checkout.session.completed", _session(new_device_id()))
    signature = sign_payload(payload)
    tampered = payload.replace(b"cus_1", b"cus_2")

    assert _deliver(client, tampered, signature).status_code == 400
    assert DeviceGrant.query.count() == 0


def test_unconfigured_secret(client, app):
    app.config["STRIPE_WEBHOOK_SECRET"] = ""
    payload = event_payload("checkout.session.completed", _session(new_device_id()))

    response = _deliver(client, payload)

    assert response.status_code == 500
    assert DeviceGrant.query.count() == 0


def test_checkout_without_device_is_ignored(client):
    response = _deliver(client, event_payload("checkout.session.completed", _session(None)))

    assert response.status_code == 200
    assert DeviceGrant.query.count() == 0


def test_unhandled_event_type(client):
    response = _deliver(client, event_payload("invoice.paid", {"id": "in_1"}))

    assert response.status_code == 200
    assert response.get_json()["type"] == "invoice.paid"


def test_update_before_checkout_is_a_no_op(client, processor):
    period_end = int(time.time()) + 86400 * 90
    processor.add_subscription("cus_1", period_end, sub_id="sub_1")
    device_id = new_device_id()
    update = {"id": "sub_1", "object": "subscription", "status": "active", "current_period_end": period_end}

    assert _deliver(client, event_payload("customer.subscription.updated", update)).status_code == 200
    assert DeviceGrant.query.count() == 0

    _deliver(client, event_payload("checkout.session.completed", _session(device_id)))
    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.ACTIVE


def test_subscription_update_moves_expiry(client, processor):
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 30, sub_id="sub_1")
    device_id = new_device_id()
    _deliver(client, event_payload("checkout.session.completed", _session(device_id)))

    renewed = int(time.time()) + 86400 * 120
    update = {"id": "sub_1", "object": "subscription", "status": "active", "current_period_end": renewed}
    _deliver(client, event_payload("customer.subscription.updated", update))

    db.session.expire_all()
    assert DeviceGrant.query.filter_by(device_id=device_id).one().expires_at == datetime.utcfromtimestamp(renewed)


def test_deleted_subscription_deactivates_device(client, processor):
    period_end = int(time.time()) + 86400 * 30
    sub = processor.add_subscription("cus_1", period_end, sub_id="sub_1")
    device_id = new_device_id()
    _deliver(client, event_payload("checkout.session.completed", _session(device_id)))

    sub["status"] = "canceled"
    deleted = {"id": "sub_1", "object": "subscription", "status": "canceled", "current_period_end": period_end}
    _deliver(client, event_payload("customer.subscription.deleted", deleted))

    db.session.expire_all()
    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.INACTIVE
    check = client.post("/api/check-subscription", json={"deviceId": device_id}).get_json()
    assert check["subscribed"] is False


def test_replay_after_cancel_stays_cancelled(client, processor, admin_headers):
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 30, sub_id="sub_1")
    device_id = new_device_id()
    _deliver(client, event_payload("checkout.session.completed", _session(device_id)))

    client.post("/api/admin/cancel-stripe-subscription",
                json={"subscriptionId": "sub_1", "cancelImmediately": True}, headers=admin_headers)
    _deliver(client, event_payload("checkout.session.completed", _session(device_id)))

    db.session.expire_all()
    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.CANCELLED


def test_new_checkout_after_cancel_reactivates(client, processor, admin_headers):
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 30, sub_id="sub_1")
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 90, sub_id="sub_2")
    device_id = new_device_id()
    _deliver(client, event_payload("checkout.session.completed", _session(device_id, "sub_1")))
    client.post("/api/admin/cancel-stripe-subscription",
                json={"subscriptionId": "sub_1", "cancelImmediately": True}, headers=admin_headers)

    _deliver(client, event_payload("checkout.session.completed", _session(device_id, "sub_2")))

    db.session.expire_all()
    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.ACTIVE


def test_create_checkout(client, processor):
    device_id = new_device_id()

    response = client.post("/api/create-checkout", json={"deviceId": device_id},
                           headers={"Origin": "https://maoun.app"})

    assert response.status_code == 200
    assert response.get_json()["url"].startswith("https://checkout.stripe.test/")
    params = processor.sessions[0]
    assert params["mode"] == "subscription"
    assert params["metadata"] == {"device_id": device_id}
    assert params["subscription_data"] == {"metadata": {"device_id": device_id}}
    assert params["success_url"] == f"https://maoun.app/subscription-success?device={device_id}"
    assert params["cancel_url"] == "https://maoun.app/pricing"
    price = params["line_items"][0]["price_data"]
    assert price["currency"] == "sar"
    assert price["unit_amount"] == 1200
    assert price["recurring"] == {"interval": "month", "interval_count": 3}


def test_create_checkout_requires_device(client, processor):
    response = client.post("/api/create-checkout", json={})

    assert response.status_code == 400
    assert processor.sessions == []


def test_create_checkout_processor_outage(client, processor):
    processor.fail = True

    response = client.post("/api/create-checkout", json={"deviceId": new_device_id()})
    assert response.status_code == 502


def test_replay_after_deletion_stays_inactive(client, processor):
    period_end = int(time.time()) + 86400 * 30
    sub = processor.add_subscription("cus_1", period_end, sub_id="sub_1")
    device_id = new_device_id()
    checkout = event_payload("checkout.session.completed", _session(device_id), event_id="evt_same")
    _deliver(client, checkout)

    sub["status"] = "canceled"
    deleted = {"id": "sub_1", "object": "subscription", "status": "canceled", "current_period_end": period_end}
    _deliver(client, event_payload("customer.subscription.deleted", deleted))
    assert _deliver(client, checkout).status_code == 200

    db.session.expire_all()
    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.INACTIVE
    processor.fail = True
    check = client.post("/api/check-subscription", json={"deviceId": device_id}).get_json()
    assert check["subscribed"] is False


def test_replay_during_outage_keeps_stored_state(client, processor):
    period_end = int(time.time()) + 86400 * 30
    sub = processor.add_subscription("cus_1", period_end, sub_id="sub_1")
    device_id = new_device_id()
    checkout = event_payload("checkout.session.completed", _session(device_id), event_id="evt_same")
    _deliver(client, checkout)
    sub["status"] = "canceled"
    deleted = {"id": "sub_1", "object": "subscription", "status": "canceled", "current_period_end": period_end}
    _deliver(client, event_payload("customer.subscription.deleted", deleted))

    processor.fail = True
    assert _deliver(client, checkout).status_code == 200

    db.session.expire_all()
    grant = DeviceGrant.query.filter_by(device_id=device_id).one()
    assert grant.status is GrantStatus.INACTIVE
    assert grant.expires_at == datetime.utcfromtimestamp(period_end)


def test_checkout_for_deleted_subscription_is_inactive(client, processor):
    processor.add_subscription("cus_1", int(time.time()) + 86400 * 30, status="canceled", sub_id="sub_1")
    device_id = new_device_id()

    _deliver(client, event_payload("checkout.session.completed", _session(device_id)))

    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.INACTIVE


def test_replay_without_subscription_keeps_cancelled(client):
    device_id = new_device_id()
    checkout = event_payload("checkout.session.completed", _session(device_id, subscription_id=None))
    _deliver(client, checkout)
    grant = DeviceGrant.query.filter_by(device_id=device_id).one()
    grant.status = GrantStatus.CANCELLED
    db.session.commit()

    _deliver(client, checkout)

    db.session.expire_all()
    assert DeviceGrant.query.filter_by(device_id=device_id).one().status is GrantStatus.CANCELLED
