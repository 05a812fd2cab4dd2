"""httpx adapters: business mapping, retries, idempotency headers, breakers."""

from decimal import Decimal

import httpx
import pytest

from apps.escrow.errors import UpstreamUnavailableError
from apps.escrow.http_adapters import (
    CircuitBreaker,
    CircuitOpenError,
    HttpPaymentGateway,
    HttpProductCatalog,
    HttpReleaseGateway,
    HttpSellerDirectory,
    _escrow_cb,
)


def _resp(method, url, status, body=None):
    return httpx.Response(status, json=body if body is not None else {}, request=httpx.Request(method, url))


@pytest.fixture
def fast_retries(settings, monkeypatch):
    settings.HTTP_RETRY_MAX = 2
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)


@pytest.fixture
def post_calls(monkeypatch):
    """Patch httpx.Client.post with a scripted sequence of responses or exceptions."""
    calls = []
    script = []

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls.append({"url": url, "json": json, "headers": dict(headers or {})})
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        status, body = step
        return _resp("POST", url, status, body)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    return calls, script


def test_lock_success_sends_idempotency_key(fast_retries, post_calls):
    calls, script = post_calls
    script.append((200, {"locked": True, "reference": "escrow_abc", "simulated": False}))

    result = HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("80.50"), "0xSELLER")

    assert result.ok and result.reference == "escrow_abc" and result.simulated is False
    assert calls[0]["url"] == "http://x/escrow/lock"
    assert calls[0]["json"] == {"order_id": "o1", "amount": "80.50", "destination_address": "0xSELLER"}
    assert calls[0]["headers"]["Idempotency-Key"] == "escrow-lock:o1"
    assert calls[0]["headers"]["X-Retry-Count"] == "0"


def test_lock_reports_simulated_settlement(fast_retries, post_calls):
    _, script = post_calls
    script.append((200, {"locked": True, "reference": "simulated_escrow_1", "simulated": True}))
    result = HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("1"), "0xS")
    assert result.simulated is True


def test_lock_retries_on_5xx_then_succeeds(fast_retries, post_calls):
    calls, script = post_calls
    script.extend([(503, {}), (200, {"reference": "escrow_retry"})])

    result = HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("10"), "0xS")

    assert result.ok and result.reference == "escrow_retry"
    assert len(calls) == 2
    assert calls[1]["headers"]["X-Retry-Count"] == "1"
    assert calls[0]["headers"]["Idempotency-Key"] == calls[1]["headers"]["Idempotency-Key"]


def test_lock_business_rejection_is_not_retried(fast_retries, post_calls):
    calls, script = post_calls
    script.append((402, {"detail": "INSUFFICIENT_FUNDS"}))

    result = HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("10"), "0xS")

    assert not result.ok and not result.retriable
    assert result.reason == "INSUFFICIENT_FUNDS"
    assert len(calls) == 1


def test_lock_transport_errors_exhaust_retries(fast_retries, post_calls):
    calls, script = post_calls
    script.append(httpx.ConnectError("down"))

    result = HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("10"), "0xS")

    assert not result.ok and result.retriable
    assert len(calls) == 3  # first attempt + HTTP_RETRY_MAX


def test_lock_short_circuits_when_breaker_open(fast_retries, post_calls):
    calls, script = post_calls
    script.append((200, {"reference": "never"}))
    for _ in range(_escrow_cb.fail_threshold):
        _escrow_cb.on_failure()

    result = HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("10"), "0xS")

    assert result.retriable
    assert calls == []


def test_release_maps_mismatch_to_rejection(fast_retries, post_calls):
    calls, script = post_calls
    script.append((422, {"detail": "AMOUNT_MISMATCH"}))

    result = HttpReleaseGateway(base_url="http://x").release("o1", "escrow_abc", "0xS", Decimal("10"))

    assert not result.ok and result.reason == "AMOUNT_MISMATCH"
    assert calls[0]["url"] == "http://x/escrow/release"
    assert calls[0]["headers"]["Idempotency-Key"] == "escrow-release:o1"
    assert calls[0]["json"]["escrow_reference"] == "escrow_abc"


def test_release_success(fast_retries, post_calls):
    _, script = post_calls
    script.append((200, {"released": True, "reference": "release_1", "simulated": False}))
    result = HttpReleaseGateway(base_url="http://x").release("o1", "escrow_abc", "0xS", Decimal("10"))
    assert result.ok and result.reference == "release_1"


def test_request_id_is_propagated(fast_retries, post_calls):
    from gateway.middleware import REQUEST_ID_CTX

    calls, script = post_calls
    script.append((200, {"reference": "escrow_1"}))
    token = REQUEST_ID_CTX.set("rid-123")
    try:
        HttpPaymentGateway(base_url="http://x").submit("o1", Decimal("10"), "0xS")
    finally:
        REQUEST_ID_CTX.reset(token)
    assert calls[0]["headers"]["X-Request-ID"] == "rid-123"


def _patch_get(monkeypatch, status, body=None, exc=None):
    calls = []

    def fake_get(self, url, headers=None, **kwargs):
        calls.append(url)
        if exc is not None:
            raise exc
        return _resp("GET", url, status, body)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    return calls


def test_catalog_listing(fast_retries, monkeypatch):
    _patch_get(monkeypatch, 200, {"id": "p1", "seller_id": "s1", "price": "10000.00", "status": "available"})
    listing = HttpProductCatalog(base_url="http://cat").get_listing("p1")
    assert listing.seller_id == "s1"
    assert listing.price == Decimal("10000.00")
    assert listing.available is True


def test_catalog_sold_product_is_unavailable(fast_retries, monkeypatch):
    _patch_get(monkeypatch, 200, {"id": "p1", "seller_id": "s1", "price": 5, "status": "sold"})
    assert HttpProductCatalog(base_url="http://cat").get_listing("p1").available is False


def test_catalog_missing_product(fast_retries, monkeypatch):
    _patch_get(monkeypatch, 404, {"detail": "NOT_FOUND"})
    assert HttpProductCatalog(base_url="http://cat").get_listing("p1") is None


def test_catalog_outage_raises_upstream_unavailable(fast_retries, monkeypatch):
    calls = _patch_get(monkeypatch, 0, exc=httpx.ReadTimeout("slow"))
    with pytest.raises(UpstreamUnavailableError) as e:
        HttpProductCatalog(base_url="http://cat").get_listing("p1")
    assert e.value.http_status == 503
    assert len(calls) == 3


def test_catalog_marks_product_unavailable(fast_retries, post_calls):
    calls, script = post_calls
    script.append((204, None))
    HttpProductCatalog(base_url="http://cat").set_unavailable("p1")
    assert calls[0]["url"] == "http://cat/products/p1/unavailable"


def test_directory_address(fast_retries, monkeypatch):
    calls = _patch_get(monkeypatch, 200, {"address": "0xSELLER"})
    assert HttpSellerDirectory(base_url="http://dir").get_payout_address("s1") == "0xSELLER"
    assert calls == ["http://dir/sellers/s1/payout-address"]


def test_directory_unknown_seller(fast_retries, monkeypatch):
    _patch_get(monkeypatch, 404)
    assert HttpSellerDirectory(base_url="http://dir").get_payout_address("s1") is None


def test_breaker_opens_and_probes():
    cb = CircuitBreaker("t", fail_threshold=2, reset_timeout=60)
    cb.on_failure()
    assert cb.state == "CLOSED"
    cb.on_failure()
    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        cb.before_call()


def test_breaker_half_open_allows_single_probe():
    cb = CircuitBreaker("t", fail_threshold=1, reset_timeout=0)
    cb.on_failure()
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(CircuitOpenError):
        cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"
