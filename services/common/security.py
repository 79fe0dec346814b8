"""
Service-to-service and gateway identity dependencies

Token handling happens at the gateway. Services only see:
  - ``X-Service-Key`` on trusted internal calls (shared secret)
  - ``X-User-Id`` / ``X-User-Role`` asserted by the gateway for end users
"""

import logging
import os
from dataclasses import dataclass

from fastapi import Depends, Header

from .errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

INTERNAL_SERVICE_KEY = os.environ.get("INTERNAL_SERVICE_KEY", "internal-service-secret-key")
SERVICE_KEY_HEADER = "X-Service-Key"
USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"

ROLE_CUSTOMER = "customer"
ROLE_SELLER = "seller"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str = ROLE_CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_admin_or_seller(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SELLER)

    def headers(self) -> dict:
        """Identity headers to forward when calling another service on the caller's behalf."""
        return {USER_ID_HEADER: self.user_id, USER_ROLE_HEADER: self.role}


def internal_headers() -> dict:
    return {SERVICE_KEY_HEADER: INTERNAL_SERVICE_KEY}


async def require_internal_service(
    x_service_key: str | None = Header(None, alias=SERVICE_KEY_HEADER),
) -> None:
    if x_service_key != INTERNAL_SERVICE_KEY:
        logger.warning("Rejected internal call with missing or invalid service key")
        raise Unauthorized("This endpoint is only available to internal services")


async def require_user(
    x_user_id: str | None = Header(None, alias=USER_ID_HEADER),
    x_user_role: str | None = Header(None, alias=USER_ROLE_HEADER),
) -> Caller:
    if not x_user_id:
        raise Unauthorized("Authenticated user required")
    return Caller(user_id=x_user_id, role=(x_user_role or ROLE_CUSTOMER).lower())


async def require_admin_or_seller(caller: Caller = Depends(require_user)) -> Caller:
    if not caller.is_admin_or_seller:
        raise Forbidden("Admin or seller role required")
    return caller
