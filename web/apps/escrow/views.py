"""HTTP views for the escrow orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
delegate to ``OrderLifecycleService`` and render the result. The acting
user comes from the ``X-Actor-Id`` header (set by the upstream auth proxy
and exposed as ``request.actor_id`` by ``gateway.middleware.ActorMiddleware``);
requests without it are answered with 401.

Lifecycle errors are rendered with their own HTTP status and
``{detail, message, order}`` body, so clients always get the authoritative
order state back alongside the failure.

Idempotency: order creation, payment and delivery confirmation accept an
``Idempotency-Key`` header. The first request is processed and its
response stored; retries with the same key and payload get the stored
response back with ``Idempotent-Replay: true``. Reusing a key with a
different payload returns 409 ``IDEMPOTENCY_CONFLICT``.
"""

import logging

from django.core.paginator import EmptyPage, Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .errors import LifecycleError
from .idempotency import discard, finalize, get_or_create_idempotent
from .providers import get_lifecycle_service
from .schemas import CreateOrderDTO, MessageReadDTO, OrderReadDTO, ProposalDTO, RejectDTO

logger = logging.getLogger(__name__)


def _unauthenticated() -> Response:
    return Response({"detail": "UNAUTHENTICATED"}, status=status.HTTP_401_UNAUTHORIZED)


def _invalid(e: ValidationError) -> Response:
    return Response(
        {"detail": "INVALID_PAYLOAD", "message": str(e)}, status=status.HTTP_400_BAD_REQUEST
    )


def _order_body(order) -> dict:
    return OrderReadDTO.from_domain(order).model_dump(mode="json")


def _payload(request) -> dict:
    data = request.data
    return dict(data) if hasattr(data, "items") else {}


def _execute(request, actor_id: str, call, success_status=status.HTTP_200_OK, idempotent=False) -> Response:
    """Run ``call`` and render its order, honoring ``Idempotency-Key``.

    ``call`` receives the service and returns the resulting domain order.
    """
    idem_key = request.headers.get("Idempotency-Key") if idempotent else None
    rec = None
    if idem_key:
        scope = {"actor": actor_id, "path": request.path, "body": _payload(request)}
        try:
            existing, rec = get_or_create_idempotent(idem_key, scope)
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
        if existing:
            resp = Response(rec.response_body, status=rec.response_status)
            resp["Idempotent-Replay"] = "true"
            return resp

    order_id = None
    try:
        order = call(get_lifecycle_service())
        body, code = _order_body(order), success_status
        order_id = order.id
    except LifecycleError as e:
        logger.info(
            "lifecycle request refused",
            extra={"detail": e.code, "http_status": e.http_status, "path": request.path},
        )
        body, code = e.to_dict(), e.http_status
    except Exception:
        if rec:
            discard(rec)
        raise

    if rec:
        if code == status.HTTP_503_SERVICE_UNAVAILABLE:
            discard(rec)
        else:
            finalize(rec, code, body, order_id=order_id)
    return Response(body, status=code)


class _ActorView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_action"


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module; returns ``{"ok": true}``."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(_ActorView):
    """List the actor's orders (GET) or open a new order (POST)."""

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        role = request.GET.get("role") or None
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
            if page_size < 1:
                raise ValueError(page_size)
            orders = get_lifecycle_service().list_orders(actor_id, role)
        except ValueError as e:
            detail = "INVALID_ROLE" if str(e) == "INVALID_ROLE" else "INVALID_PAGINATION"
            return Response({"detail": detail}, status=status.HTTP_400_BAD_REQUEST)

        p = Paginator(orders, page_size)
        try:
            page_obj = p.page(page)
        except EmptyPage:
            page_obj = None
        results = [_order_body(o) for o in page_obj.object_list] if page_obj else []
        return Response(
            {"count": p.count, "page": page, "page_size": page_size, "results": results},
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        """Create a Direct or Negotiation order.

        Returns:
            Response: 201 with the order; 400 for payload errors; lifecycle
            errors (404 PRODUCT_NOT_FOUND, 403 SELF_TRADE_NOT_ALLOWED,
            409 PRODUCT_UNAVAILABLE, 422 INVALID_PROPOSAL, 503) with their
            own status; stored response on idempotent replays.
        """
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return _invalid(e)
        return _execute(
            request,
            actor_id,
            lambda svc: svc.create_order(actor_id, dto.product_id, dto.mode, dto.proposed_price),
            success_status=status.HTTP_201_CREATED,
            idempotent=True,
        )


class RetrieveOrderView(_ActorView):
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        return _execute(request, actor_id, lambda svc: svc.get_order(actor_id, str(oid)))


class OrderMessagesView(_ActorView):
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        try:
            messages = get_lifecycle_service().messages(actor_id, str(oid))
        except LifecycleError as e:
            return Response(e.to_dict(), status=e.http_status)
        results = [
            MessageReadDTO(author_id=m.author_id, text=m.text, created_at=m.created_at).model_dump(mode="json")
            for m in messages
        ]
        return Response({"order_id": str(oid), "results": results}, status=status.HTTP_200_OK)


class AcceptProposalView(_ActorView):
    def post(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        return _execute(request, actor_id, lambda svc: svc.accept_proposal(actor_id, str(oid)))


class RejectProposalView(_ActorView):
    def post(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        try:
            RejectDTO.model_validate(request.data)
        except ValidationError as e:
            return _invalid(e)
        return _execute(request, actor_id, lambda svc: svc.reject_proposal(actor_id, str(oid)))


class ProposeAgainView(_ActorView):
    def post(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        try:
            dto = ProposalDTO.model_validate(request.data)
        except ValidationError as e:
            return _invalid(e)
        return _execute(
            request, actor_id, lambda svc: svc.propose_again(actor_id, str(oid), dto.proposed_price)
        )


class SubmitPaymentView(_ActorView):
    throttle_scope = "orders_payment"

    def post(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        return _execute(
            request, actor_id, lambda svc: svc.submit_payment(actor_id, str(oid)), idempotent=True
        )


class SellerConfirmationView(_ActorView):
    def post(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        return _execute(request, actor_id, lambda svc: svc.confirm_seller_acceptance(actor_id, str(oid)))


class ConfirmDeliveryView(_ActorView):
    throttle_scope = "orders_payment"

    def post(self, request, oid):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        return _execute(
            request, actor_id, lambda svc: svc.confirm_delivery(actor_id, str(oid)), idempotent=True
        )


class RewardTotalView(_ActorView):
    throttle_scope = "orders_detail"

    def get(self, request, user_id: str):
        actor_id = getattr(request, "actor_id", None)
        if not actor_id:
            return _unauthenticated()
        if actor_id != user_id:
            return Response({"detail": "FORBIDDEN"}, status=status.HTTP_403_FORBIDDEN)
        total = get_lifecycle_service().reward_total(user_id)
        return Response({"user_id": user_id, "total": str(total)}, status=status.HTTP_200_OK)
