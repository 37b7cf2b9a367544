# api/__init__.py
from api.server import (
    create_app,
    configure_logging,
    HealthResponse,
)
from api.dependencies import get_services, require_admin

__all__ = [
    "create_app",
    "configure_logging",
    "HealthResponse",
    "get_services",
    "require_admin",
]
