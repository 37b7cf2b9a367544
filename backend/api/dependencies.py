# api/dependencies.py
"""
FastAPI dependencies: the service container for the request, and the admin
capability check.

Authentication itself lives outside this service. All we need to know is
whether the caller holds the admin token.
"""

import hmac
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request

from services.container import CommerceServices


def get_services(request: Request) -> CommerceServices:
    return request.app.state.services


async def require_admin(
    authorization: Annotated[Optional[str], Header()] = None,
    services: CommerceServices = Depends(get_services),
) -> None:
    expected = services.config.admin_api_token
    if not expected:
        # No token configured: admin surface is closed
        raise HTTPException(status_code=401, detail="Admin access is not configured")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Admin credentials are missing")

    token = authorization[len("Bearer "):].strip()
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin credentials")


Services = Annotated[CommerceServices, Depends(get_services)]
AdminOnly = Depends(require_admin)
