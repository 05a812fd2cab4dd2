# The repo module binds its engine at import time: point it at a throwaway
# sqlite file before the app is imported.
import os
import sys
import tempfile
from pathlib import Path

import pytest

SERVICE_DIR = Path(__file__).resolve().parent.parent
if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))

os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(), "escrow_gateway.db")


@pytest.fixture
def api(monkeypatch):
    from fastapi.testclient import TestClient

    import main
    from repo import EscrowHold, IdempotencyKey, get_session

    with get_session() as s:
        s.query(IdempotencyKey).delete()
        s.query(EscrowHold).delete()
        s.commit()
    monkeypatch.setenv("SETTLEMENT_MODE", "live")
    return TestClient(main.app)
