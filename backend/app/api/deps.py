"""
Dependency injection module for API routes.

Provides the process-wide lifecycle service and the acting user resolved
from the headers set by the external auth system.
"""

import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from backend.app.models.domain.lifecycle import UserRole
from backend.app.services.lifecycle_service import CaseLifecycleService, create_lifecycle_service
from backend.app.utils.logging import get_logger

logger = get_logger(__name__)


_lifecycle_service_instance: Optional[CaseLifecycleService] = None
_lifecycle_service_lock = threading.Lock()


@dataclass(frozen=True)
class Actor:
    """Authenticated user performing a request."""
    user_id: str
    role: UserRole


async def get_actor(
    x_user_id: str = Header(..., alias="X-User-ID", min_length=1),
    x_user_role: UserRole = Header(..., alias="X-User-Role")
) -> Actor:
    return Actor(user_id=x_user_id, role=x_user_role)


async def get_lifecycle_service() -> CaseLifecycleService:
    """Get the lifecycle service singleton, creating it on first use."""
    global _lifecycle_service_instance

    if _lifecycle_service_instance is None:
        with _lifecycle_service_lock:
            if _lifecycle_service_instance is None:
                _lifecycle_service_instance = create_lifecycle_service()
                logger.info("Lifecycle service instance created")
    return _lifecycle_service_instance


def set_lifecycle_service(service: Optional[CaseLifecycleService]) -> None:
    """Replace the lifecycle service singleton (application startup and tests)."""
    global _lifecycle_service_instance

    with _lifecycle_service_lock:
        _lifecycle_service_instance = service
    logger.info("Global lifecycle service instance set", configured=service is not None)


def is_lifecycle_service_initialized() -> bool:
    return _lifecycle_service_instance is not None
