# Makes 'config', 'gateway' and 'apps' importable before collection
import sys
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent  # .../web
p = str(BASE_DIR)
if p not in sys.path:
    sys.path.insert(0, p)


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.REWARD_RATE = "0.5"


@pytest.fixture(autouse=True)
def fresh_collaborators():
    from django.core.cache import cache

    from apps.escrow.http_adapters import BREAKERS
    from apps.escrow.providers import reset_stubs

    cache.clear()  # throttling counters
    for cb in BREAKERS.values():
        cb.reset()
    yield reset_stubs()


@pytest.fixture
def stubs(fresh_collaborators):
    """Seeded collaborators: seller ``s1`` with payout address, product ``p1`` at 10000."""
    fresh_collaborators.directory.register("s1", "0xSELLER")
    fresh_collaborators.catalog.register("p1", "s1", "10000")
    return fresh_collaborators
