"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the escrow domain ports
using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
  by the gateway middleware.
- Circuit breaker per downstream service (escrow custodian, catalog, seller
  directory) to avoid hammering unhealthy dependencies, with HALF_OPEN
  probing after a timeout.
- Retry policy with exponential backoff for transport errors and 5xx,
  bounded by ``HTTP_TIMEOUT_SECS`` per attempt.
- Escrow idempotency: lock and release requests carry an
  ``Idempotency-Key`` derived from the order id, so a retry after an
  ambiguous timeout can never move funds twice.

Gateway clients never raise for downstream trouble: exhausted retries or an
open circuit become a retriable ``GatewayResult``; explicit 4xx answers
become a terminal one. Catalog and directory clients raise
``UpstreamUnavailableError`` instead.
"""

import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import (
    GatewayResult,
    Listing,
    PaymentGatewayPort,
    ProductCatalogPort,
    ReleaseGatewayPort,
    SellerDirectoryPort,
)
from .errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """Raised by ``CircuitBreaker.before_call`` when calls are not allowed."""


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state at call time or raise when calls are refused.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe is
                already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            if self._state != "CLOSED":
                logger.info("circuit closed", extra={"circuit": self.name})
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._probe_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._opened_at = 0.0
            self._probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-downstream instances; payment and release share the custodian's breaker
_escrow_cb = _breaker("escrow")
_catalog_cb = _breaker("catalog")
_directory_cb = _breaker("directory")

BREAKERS = {cb.name: cb for cb in (_escrow_cb, _catalog_cb, _directory_cb)}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds, max_sleep)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    timeout: float,
    payload: Optional[dict] = None,
    idem_key: Optional[str] = None,
) -> httpx.Response:
    """Issue a request with circuit-breaker precheck and exponential backoff.

    Retries only on transport errors and HTTP 5xx; at most
    ``HTTP_RETRY_MAX`` retries after the first attempt. Any answer below 500
    is returned to the caller for business mapping and counts as a healthy
    downstream.

    Raises:
        CircuitOpenError: If the breaker refuses the call.
        httpx.RequestError: Transport error after the last retry.
        httpx.HTTPStatusError: 5xx after the last retry.
    """
    max_retries, backoff, cap = _retry_policy()
    extras = {"X-Circuit-State": breaker.before_call(), "X-Retry-Count": "0"}
    if idem_key:
        extras["Idempotency-Key"] = idem_key
    headers = _request_headers(extras)
    kwargs = {"headers": headers}
    if payload is not None:
        kwargs["json"] = payload
    tries = 0

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = getattr(client, method)(url, **kwargs)
                    if resp.status_code < 500:
                        breaker.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)
                if tries > max_retries:
                    breaker.on_failure()
                    logger.warning(
                        "downstream exhausted retries",
                        extra={"circuit": breaker.name, "url": url, "tries": tries},
                    )
                    if exc:
                        raise exc
                    resp.raise_for_status()

                time.sleep(min(backoff * (2 ** (tries - 1)), cap))
    finally:
        breaker.on_finish()


def _detail(resp) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP_{resp.status_code}"
    detail = data.get("detail") if isinstance(data, dict) else None
    if isinstance(detail, dict):
        detail = detail.get("detail")
    return detail if isinstance(detail, str) and detail else f"HTTP_{resp.status_code}"


def _success(resp) -> GatewayResult:
    data = resp.json()
    return GatewayResult.success(data.get("reference"), simulated=bool(data.get("simulated", False)))


# ---------------- Escrow gateways ---------------- #

class HttpPaymentGateway(PaymentGatewayPort):
    """Moves funds into escrow through the custodian's ``/escrow/lock``.

    Business mappings:
    - 200 → success with the custodian reference and ``simulated`` flag
    - other 4xx → terminal rejection carrying the custodian's ``detail``
    - transport errors / 5xx after retries / open circuit → retriable failure
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.ESCROW_GATEWAY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def submit(self, order_id: str, amount: Decimal, destination_address: str) -> GatewayResult:
        payload = {"order_id": order_id, "amount": str(amount), "destination_address": destination_address}
        try:
            resp = _send(
                _escrow_cb, "post", f"{self.base_url}/escrow/lock", self.timeout,
                payload=payload, idem_key=f"escrow-lock:{order_id}",
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            logger.warning("escrow lock unavailable", extra={"order_id": order_id, "error": repr(e)})
            return GatewayResult.unavailable()
        if resp.status_code == 200:
            return _success(resp)
        return GatewayResult.rejected(_detail(resp))


class HttpReleaseGateway(ReleaseGatewayPort):
    """Releases escrowed funds through the custodian's ``/escrow/release``."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.ESCROW_GATEWAY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def release(
        self,
        order_id: str,
        escrow_reference: str,
        destination_address: str,
        amount: Decimal,
    ) -> GatewayResult:
        payload = {
            "order_id": order_id,
            "escrow_reference": escrow_reference,
            "destination_address": destination_address,
            "amount": str(amount),
        }
        try:
            resp = _send(
                _escrow_cb, "post", f"{self.base_url}/escrow/release", self.timeout,
                payload=payload, idem_key=f"escrow-release:{order_id}",
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            logger.warning("escrow release unavailable", extra={"order_id": order_id, "error": repr(e)})
            return GatewayResult.unavailable()
        if resp.status_code == 200:
            return _success(resp)
        return GatewayResult.rejected(_detail(resp))


# ---------------- Catalog / directory ---------------- #

class HttpProductCatalog(ProductCatalogPort):
    """Reads listings from and flags sold products in the catalog service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.CATALOG_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_listing(self, product_id: str) -> Optional[Listing]:
        try:
            resp = _send(_catalog_cb, "get", f"{self.base_url}/products/{product_id}", self.timeout)
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise UpstreamUnavailableError("catalog") from e
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise UpstreamUnavailableError("catalog")
        data = resp.json()
        try:
            price = Decimal(str(data["price"]))
        except (KeyError, InvalidOperation) as e:
            raise UpstreamUnavailableError("catalog") from e
        return Listing(
            product_id=str(data.get("id", product_id)),
            seller_id=str(data["seller_id"]),
            price=price,
            available=data.get("status", "available") == "available",
        )

    def set_unavailable(self, product_id: str) -> None:
        try:
            resp = _send(
                _catalog_cb, "post", f"{self.base_url}/products/{product_id}/unavailable", self.timeout,
                payload={"status": "sold"},
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise UpstreamUnavailableError("catalog") from e
        if resp.status_code >= 300:
            raise UpstreamUnavailableError("catalog")


class HttpSellerDirectory(SellerDirectoryPort):
    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.SELLER_DIRECTORY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_payout_address(self, seller_id: str) -> Optional[str]:
        try:
            resp = _send(
                _directory_cb, "get", f"{self.base_url}/sellers/{seller_id}/payout-address", self.timeout
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise UpstreamUnavailableError("directory") from e
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise UpstreamUnavailableError("directory")
        return resp.json().get("address") or None
