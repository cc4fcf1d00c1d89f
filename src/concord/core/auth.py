"""API key authentication and tenant scoping."""

from fastapi import Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from concord.core.config import get_settings

security = HTTPBearer()


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> str:
    settings = get_settings()
    if credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials


async def tenant_context(x_tenant_id: str | None = Header(default=None)) -> str | None:
    """Tenant the request acts for; no header means the system scope."""
    if x_tenant_id is None:
        return None
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is blank")
    if len(tenant_id) > 36:
        raise HTTPException(status_code=400, detail="X-Tenant-Id must be at most 36 characters")
    return tenant_id
