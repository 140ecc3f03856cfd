"""Holder for the running Orchestrator.

The status API is created by the orchestrator but its routes need to
reach back into it. Pattern: Orchestrator registers itself here before
starting uvicorn -> routes resolve it via get_orchestrator().

Logging Strategy:
    DEBUG - Registration, dependency injection
    ERROR - Orchestrator requested before registration
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

# ============================================================================
# Global Singleton Instance
# ============================================================================

orchestrator: Optional[Orchestrator] = None
"""Orchestrator serving the status API, set once startup reaches steady state."""


def set_orchestrator(instance: Optional[Orchestrator]) -> None:
    global orchestrator
    orchestrator = instance
    logger.debug(f"Orchestrator {'registered' if instance else 'cleared'}")


# ============================================================================
# Dependency Injection
# ============================================================================

def get_orchestrator() -> Orchestrator:
    """FastAPI dependency returning the registered Orchestrator.

    Raises:
        RuntimeError: Called before the orchestrator registered itself

    Example:
        >>> @router.get("/health")
        >>> async def health(orch: Orchestrator = Depends(get_orchestrator)):
        ...     return orch.summary()
    """
    if orchestrator is None:
        logger.error("Orchestrator requested before registration")
        raise RuntimeError("Orchestrator not initialized")

    return orchestrator
