"""FastAPI dependencies shared by the ML routers."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from app.core.config import settings
from app.services.ml import MLServices


def get_services(request: Request) -> MLServices:
    services = getattr(request.app.state, "ml", None)
    if services is None:
        raise HTTPException(status_code=503, detail="ML services not initialized")
    return services


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """No-op unless ML_ADMIN_TOKEN is set."""
    if settings.ML_ADMIN_TOKEN and x_admin_token != settings.ML_ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Admin token required")
