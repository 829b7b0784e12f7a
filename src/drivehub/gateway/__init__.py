"""Storage gateway.

Uniform list/stat/read/write/move/delete/share operations over every
configured storage source, with opaque pagination cursors and federated
listings across sources. The service lives in ``drivehub.gateway.service``
and is assembled by ``drivehub.gateway.factory.create_gateway``.
"""

from drivehub.gateway.cursor import CursorManager, operation_signature
from drivehub.gateway.models import (
    FederatedListing,
    GatewayConfig,
    ListingPage,
    SourceFailure,
)
from drivehub.gateway.registry import InMemorySourceRegistry, SourceRegistry

__all__ = [
    "CursorManager",
    "operation_signature",
    "FederatedListing",
    "GatewayConfig",
    "ListingPage",
    "SourceFailure",
    "InMemorySourceRegistry",
    "SourceRegistry",
]
