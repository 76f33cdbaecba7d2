from datetime import datetime

from services.processor import subscription_period_end, subscription_product
from utils import add_months, from_epoch, get_device_info, is_valid_email, normalize_email


def test_normalize_email():
    assert normalize_email("  Someone@Example.COM ") == "someone@example.com"
    assert normalize_email(None) == ""


def test_is_valid_email():
    assert is_valid_email("a@x.com")
    assert not is_valid_email("a@x")
    assert not is_valid_email("a b@x.com")
    assert not is_valid_email("")


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
    assert add_months(datetime(2025, 11, 15, 10, 30), 3) == datetime(2026, 2, 15, 10, 30)


def test_from_epoch_is_defensive():
    assert from_epoch(1735689600) == datetime(2025, 1, 1)
    assert from_epoch("1735689600") == datetime(2025, 1, 1)
    assert from_epoch(None) is None
    assert from_epoch("not-a-number") is None
    assert from_epoch(10 ** 20) is None
    assert from_epoch(True) is None


def test_period_end_reads_items_when_top_level_missing():
    sub = {"id": "sub_1", "items": {"data": [{"current_period_end": 1735689600}]}}
    assert subscription_period_end(sub) == datetime(2025, 1, 1)


def test_period_end_malformed_is_unknown():
    assert subscription_period_end({"id": "sub_1", "current_period_end": "garbage"}) is None
    assert subscription_period_end({"id": "sub_1"}) is None
    assert subscription_period_end(None) is None


def test_subscription_product():
    sub = {"items": {"data": [{"price": {"product": "prod_123"}}]}}
    assert subscription_product(sub) == "prod_123"
    assert subscription_product({"items": {"data": []}}) is None


def test_get_device_info():
    ua = ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
          "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1")
    assert get_device_info(ua).startswith("iOS 17.0")
    assert get_device_info("") == "Desconocido"
