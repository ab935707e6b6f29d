from __future__ import annotations

from rentflow.adapters.circle_rail import make_circle_rail
from rentflow.adapters.logging_utils import get_logger
from rentflow.adapters.simulated_rail import SimulatedRail
from rentflow.domain.errors import ConfigurationError
from rentflow.domain.ports import PaymentRailAdapter

logger = get_logger(__name__)


def make_rail_adapter(cfg) -> PaymentRailAdapter:
    """
    Pick the settlement backend once, at startup.

    Business logic only ever sees the PaymentRailAdapter protocol.
    """
    backend = str(cfg.RAIL_BACKEND).lower()

    if backend == "circle":
        rail = make_circle_rail(cfg)
        if not rail.is_configured():
            logger.warning("circle_rail_not_configured", extra={"context": {"env": cfg.ENV}})
        return rail

    if backend == "simulated":
        if str(cfg.ENV).lower() in {"prod", "production"}:
            raise ConfigurationError("Simulated rail is not allowed in production")
        return SimulatedRail()

    raise ConfigurationError(f"Unknown rail backend: {cfg.RAIL_BACKEND!r}")
