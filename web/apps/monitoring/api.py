from django.db import connection
from django.http import JsonResponse

from apps.escrow.http_adapters import BREAKERS


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    # open circuits degrade the report but do not fail the probe
    circuits = {name: {"state": cb.state} for name, cb in BREAKERS.items()}
    degraded = any(c["state"] != "CLOSED" for c in circuits.values())

    ok = db_ok
    code = 200 if ok else 503
    return JsonResponse(
        {
            "ok": ok,
            "degraded": degraded,
            "components": {"db": {"ok": db_ok}, "circuits": circuits},
        },
        status=code,
    )
