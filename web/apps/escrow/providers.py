"""Service provider helpers for wiring OrderLifecycleService with ports.

``get_lifecycle_service`` returns a configured service. Orders, reward
credits and order messages are always persisted through the Django ORM.
External collaborators (escrow custodian, product catalog, seller
directory) use the HTTP adapter clients when ``settings.USE_HTTP_ADAPTERS``
is truthy; otherwise they fall back to process-wide in-memory stubs that
tests and local development seed through ``STUBS``.
"""

from decimal import Decimal
from types import SimpleNamespace

from django.conf import settings

from .adapters import EscrowGatewayStub, ProductCatalogStub, SellerDirectoryStub
from .http_adapters import (
    HttpPaymentGateway,
    HttpProductCatalog,
    HttpReleaseGateway,
    HttpSellerDirectory,
)
from .lifecycle import OrderLifecycleService
from .repository import DjangoNotifier, DjangoOrderStore, DjangoRewardLedger

# Shared across requests so seeded listings and escrow holds survive between calls
STUBS = SimpleNamespace(
    escrow=EscrowGatewayStub(),
    catalog=ProductCatalogStub(),
    directory=SellerDirectoryStub(),
)


def reset_stubs(simulated: bool = False) -> SimpleNamespace:
    """Replace the in-memory collaborators with fresh instances."""
    STUBS.escrow = EscrowGatewayStub(simulated=simulated)
    STUBS.catalog = ProductCatalogStub()
    STUBS.directory = SellerDirectoryStub()
    return STUBS


def get_lifecycle_service() -> OrderLifecycleService:
    """Return an OrderLifecycleService wired for the current settings.

    Returns:
        OrderLifecycleService: ORM-backed store, ledger and notifier plus
        HTTP or stub collaborators depending on ``USE_HTTP_ADAPTERS``.
    """
    reward_rate = Decimal(str(getattr(settings, "REWARD_RATE", "0.5")))
    persistence = dict(
        store=DjangoOrderStore(),
        ledger=DjangoRewardLedger(),
        notifier=DjangoNotifier(),
        reward_rate=reward_rate,
    )
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return OrderLifecycleService(
            payments=HttpPaymentGateway(),
            releases=HttpReleaseGateway(),
            catalog=HttpProductCatalog(),
            directory=HttpSellerDirectory(),
            **persistence,
        )

    return OrderLifecycleService(
        payments=STUBS.escrow,
        releases=STUBS.escrow,
        catalog=STUBS.catalog,
        directory=STUBS.directory,
        **persistence,
    )
