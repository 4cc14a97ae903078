"""
Request authentication.

- Account endpoints take the account credential as `Authorization: Bearer kk_...`.
- Partner-service endpoints take the shared SERVICE_SECRET via X-Service-Secret.
  If SERVICE_SECRET is not set those endpoints are disabled.
"""

import secrets
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from .errors import AuthorizationError
from .ledger import Account
from .services import Services

bearer_scheme = HTTPBearer(auto_error=False)
service_secret_header = APIKeyHeader(name="X-Service-Secret", auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_credential(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Bearer credential if present; payments accept anonymous callers."""
    return credentials.credentials if credentials else None


async def require_account(
    credential: Optional[str] = Depends(get_credential),
    services: Services = Depends(get_services),
) -> Account:
    if not credential:
        raise AuthorizationError("Missing Authorization header")
    account = services.accounts.find_by_credential(credential)
    if account is None:
        raise AuthorizationError("Invalid API key")
    return account


async def verify_service_secret(
    secret: Optional[str] = Depends(service_secret_header),
    services: Services = Depends(get_services),
) -> bool:
    expected = services.settings.service_secret
    if not expected:
        raise AuthorizationError("Service endpoints are disabled")
    if not secret or not secrets.compare_digest(secret, expected):
        raise AuthorizationError("Invalid service secret")
    return True
