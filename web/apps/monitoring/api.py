from django.db import connection
from django.http import JsonResponse

from apps.orders.http_adapters import breaker_states


def health_view(_request):
    """Report database reachability and the state of every downstream circuit.

    Returns 503 only when the database is down; an open circuit degrades a
    single dependency and is reported without failing the probe.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    circuits = breaker_states()
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "degraded": any(state != "CLOSED" for state in circuits.values()),
            "components": {
                "db": {"ok": db_ok},
                "circuits": circuits,
            },
        },
        status=code,
    )
