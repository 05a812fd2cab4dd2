"""Logging filter enriching log records with request context.

Adds ``request_id`` and ``actor_id`` to every record from the ContextVars
set by the gateway middleware, so JSON log lines can be correlated per
request without touching individual log statements. Outside a request
both attributes are a hyphen ("-").
"""

from logging import Filter, LogRecord

from .middleware import ACTOR_ID_CTX, REQUEST_ID_CTX


class RequestContextFilter(Filter):
    """Populate ``record.request_id`` and ``record.actor_id``; never drops records."""

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        record.actor_id = ACTOR_ID_CTX.get()
        return True
