"""
FastAPI dependencies shared by the API routers.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from meterly.core.config import get_settings
from meterly.tenancy import TenantRegistry, TenantServices

# Set by the application lifespan
registry: TenantRegistry | None = None


def get_registry() -> TenantRegistry:
    """Get the tenant registry."""
    if registry is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return registry


def get_tenant(
    request: Request,
    tenants: TenantRegistry = Depends(get_registry),
) -> TenantServices:
    """Resolve the calling tenant from the tenant header."""
    header = get_settings().server.tenant_header
    tenant_id = request.headers.get(header)
    if not tenant_id:
        raise HTTPException(status_code=400, detail=f"Missing {header} header")
    return tenants.get(tenant_id)
