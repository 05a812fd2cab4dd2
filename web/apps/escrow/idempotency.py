"""Idempotency utilities for safely handling duplicate requests.

Clients may send an ``Idempotency-Key`` header on the order endpoints that
create an order or move funds. The first request with a key creates a
record and, once it completes, the response is stored on it; retries with
the same key and payload short-circuit to the stored response. Retriable
failures (HTTP 503) are not stored, so the client can retry with the same
key once the downstream recovers.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return
          ``(False, rec)``; the caller finalizes it.
        - Same key and payload, response stored: return ``(True, rec)``.
        - Same key and payload, first request still running: raise
          ``ValueError("IDEMPOTENCY_IN_PROGRESS")``.
        - Same key with a different payload: raise
          ``ValueError("IDEMPOTENCY_CONFLICT")``.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block; the existing-record path takes a row lock
    (SELECT ... FOR UPDATE) where the backend supports it.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        if rec.response_status == 0:
            raise ValueError("IDEMPOTENCY_IN_PROGRESS")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Args:
        rec: The idempotency record to update.
        status_code: HTTP status code to store for the response.
        body: JSON-serializable response body to persist.
        order_id: Optional order identifier to link to the record.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey) -> None:
    """Forget a key whose request did not reach a final outcome."""
    IdempotencyKey.objects.filter(key=rec.key).delete()
