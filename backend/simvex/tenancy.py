"""Tenant resolution for HTTP requests.

The storage layer trusts whatever tenant id it is given. This module is
the caller-side convention: the id comes from the `X-User-Id` header
and falls back to a shared guest tenant when the header is absent.
Identities are neither issued nor verified here.
"""

from typing import Optional

from fastapi import Header, Request

from .repositories import Repositories

DEFAULT_TENANT = "default-guest"


def get_tenant_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency returning the caller's tenant id."""
    tenant = (x_user_id or "").strip()
    return tenant or DEFAULT_TENANT


def get_repositories(request: Request) -> Repositories:
    """FastAPI dependency returning the bundle the app was built with."""
    return request.app.state.repositories
