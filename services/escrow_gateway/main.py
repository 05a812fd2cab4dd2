"""Escrow custodian API built with FastAPI.

Holds buyer funds for a marketplace order and releases them to the seller
on delivery. Validation is performed with Pydantic models, while
persistence is delegated to the SQLAlchemy-backed ``repo.EscrowRepo``.

Both mutating endpoints accept an ``Idempotency-Key`` header: a replay with
the same key and payload returns the original response, and the same key
with a different payload is rejected with 409. The key and the escrow
change are committed in one transaction.

``SETTLEMENT_MODE`` selects between ``simulated`` (no settlement back end,
references prefixed with ``simulated_``) and ``live``.
"""

import logging
import os
import time
import uuid
from decimal import Decimal
from typing import Annotated, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from repo import RELEASED, EscrowHold, EscrowRepo, IdempotencyKey, canonical_hash, engine, get_session

app = FastAPI(title="Escrow Gateway")


@app.on_event("startup")
def _startup_db():
    # brief active wait until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


logger = logging.getLogger("escrow_gateway")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


def settlement_mode() -> str:
    mode = os.getenv("SETTLEMENT_MODE", "simulated").lower()
    return mode if mode in ("simulated", "live") else "simulated"


class LockRequest(BaseModel):
    """Request body for the lock endpoint.

    Attributes:
        order_id: Marketplace order the funds are held for.
        amount: Positive amount to hold.
        destination_address: Seller payout address the funds will go to.
    """

    order_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0)
    destination_address: str = Field(min_length=1, max_length=255)


class LockResponse(BaseModel):
    locked: bool
    reference: str
    simulated: bool


class ReleaseRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    escrow_reference: str = Field(min_length=1, max_length=128)
    destination_address: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0)


class ReleaseResponse(BaseModel):
    released: bool
    reference: str
    simulated: bool


def _replay(s: Session, key: Optional[str], payload_hash: str) -> Optional[dict]:
    """Return the stored response for ``key`` or None when the key is new.

    Raises:
        HTTPException: 409 when the key was used with a different payload.
    """
    if not key:
        return None
    rec = s.get(IdempotencyKey, key)
    if rec is None:
        return None
    if rec.request_hash != payload_hash:
        raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
    return rec.response


def _commit(s: Session, key: Optional[str], payload_hash: str, body: dict, conflict: str) -> dict:
    """Commit the pending change together with the idempotency record.

    A concurrent writer may win the race on the same order or key; its
    stored response is returned when it carried the same key and payload.
    """
    if key:
        s.add(IdempotencyKey(key=key, request_hash=payload_hash, response=body))
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        stored = _replay(s, key, payload_hash)
        if stored is not None:
            return stored
        raise HTTPException(status_code=409, detail=conflict)
    return body


def _lock_body(hold: EscrowHold) -> dict:
    return {"locked": True, "reference": hold.reference, "simulated": hold.simulated}


def _release_body(hold: EscrowHold) -> dict:
    return {"released": True, "reference": hold.release_reference, "simulated": hold.simulated}


@app.get("/health")
def health():
    return {"ok": True, "settlement_mode": settlement_mode()}


@app.post("/escrow/lock", response_model=LockResponse)
def lock(
    req: LockRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Hold ``amount`` for ``order_id``.

    Raises:
        HTTPException: 409 ``ESCROW_EXISTS`` when the order already has a
            hold and the request is not a replay; 409
            ``IDEMPOTENCY_CONFLICT`` when the key is reused with a
            different payload.
    """
    payload_hash = canonical_hash(req.model_dump(mode="json"))
    with get_session() as s:
        stored = _replay(s, idempotency_key, payload_hash)
        if stored is not None:
            return stored

        repo = EscrowRepo(s)
        if repo.by_order(req.order_id) is not None:
            raise HTTPException(status_code=409, detail="ESCROW_EXISTS")
        try:
            hold = repo.lock(
                order_id=req.order_id,
                amount=req.amount,
                destination_address=req.destination_address,
                simulated=settlement_mode() == "simulated",
            )
            body = _lock_body(hold)
        except IntegrityError:
            s.rollback()
            stored = _replay(s, idempotency_key, payload_hash)
            if stored is not None:
                return stored
            raise HTTPException(status_code=409, detail="ESCROW_EXISTS")

        body = _commit(s, idempotency_key, payload_hash, body, "ESCROW_EXISTS")
        logger.info("escrow locked", extra={"order_id": req.order_id, "reference": body["reference"]})
        return body


@app.post("/escrow/release", response_model=ReleaseResponse)
def release(
    req: ReleaseRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Release a hold to its destination address.

    Repeating the release of an already released hold returns the original
    release reference.

    Raises:
        HTTPException: 404 ``ESCROW_NOT_FOUND``; 422 ``ORDER_MISMATCH``,
            ``AMOUNT_MISMATCH`` or ``DESTINATION_MISMATCH`` when the request
            does not match the hold; 409 ``IDEMPOTENCY_CONFLICT``.
    """
    payload_hash = canonical_hash(req.model_dump(mode="json"))
    with get_session() as s:
        stored = _replay(s, idempotency_key, payload_hash)
        if stored is not None:
            return stored

        repo = EscrowRepo(s)
        hold = repo.by_reference(req.escrow_reference, for_update=True)
        if hold is None:
            raise HTTPException(status_code=404, detail="ESCROW_NOT_FOUND")
        if hold.order_id != req.order_id:
            raise HTTPException(status_code=422, detail="ORDER_MISMATCH")
        if Decimal(hold.amount) != req.amount:
            raise HTTPException(status_code=422, detail="AMOUNT_MISMATCH")
        if hold.destination_address != req.destination_address:
            raise HTTPException(status_code=422, detail="DESTINATION_MISMATCH")

        if hold.status != RELEASED:
            repo.release(hold)
        body = _commit(s, idempotency_key, payload_hash, _release_body(hold), "RELEASE_CONFLICT")
        logger.info("escrow released", extra={"order_id": req.order_id, "reference": body["reference"]})
        return body


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
