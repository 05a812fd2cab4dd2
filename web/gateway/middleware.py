"""Middleware that assigns and propagates per-request context.

- ``RequestIdMiddleware`` reuses the incoming ``X-Request-Id`` header or
  generates a UUIDv4, stores it on ``request.request_id`` and in
  ``REQUEST_ID_CTX``, and echoes it back as ``X-Request-ID``. The HTTP
  adapters forward the same id to downstream services.
- ``ActorMiddleware`` exposes the authenticated actor forwarded by the auth
  proxy in ``X-Actor-Id`` as ``request.actor_id`` (``None`` when absent)
  and in ``ACTOR_ID_CTX`` for log enrichment.
- ``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies with 413.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
ACTOR_ID_CTX = contextvars.ContextVar("actor_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))
MAX_ACTOR_ID_LEN = 64


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header in ``request.META`` casing.
        RESPONSE_HEADER (str): Header returned on responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class ActorMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_ACTOR_ID"

    def process_request(self, request):
        actor = (request.META.get(self.HEADER) or "").strip()
        if len(actor) > MAX_ACTOR_ID_LEN:
            return JsonResponse({"detail": "INVALID_ACTOR"}, status=400)
        request.actor_id = actor or None
        ACTOR_ID_CTX.set(actor or "-")

    def process_response(self, request, response):
        ACTOR_ID_CTX.set("-")
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
