from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.gear_models import Profile
from services.errors import AccessDenied, Unauthorized
from services.query_service import run_rows

AUTH_LOGGER = logging.getLogger("itemtraxx.auth")

ROLE_TENANT_ADMIN = "tenant_admin"
ROLE_TENANT_USER = "tenant_user"
TENANT_ROLES = frozenset({ROLE_TENANT_ADMIN, ROLE_TENANT_USER})


@dataclass(frozen=True)
class CallerContext:
    user_id: str
    tenant_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_TENANT_ADMIN


def extract_bearer_token(authorization: str | None) -> str:
    value = (authorization or "").strip()
    if not value:
        raise Unauthorized()
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized()
    return token.strip()


def fetch_auth_user(supabase_url: str, publishable_key: str, access_token: str, timeout: float = 10.0) -> dict[str, Any]:
    """Resolve a bearer token to its auth user through the Supabase auth endpoint."""
    request = urllib.request.Request(
        url=f"{supabase_url.rstrip('/')}/auth/v1/user",
        headers={
            "apikey": publishable_key,
            "Authorization": f"Bearer {access_token}",
        },
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            if response.status != 200:
                raise Unauthorized()
            payload = json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        AUTH_LOGGER.info("Auth lookup rejected status=%s", exc.code)
        raise Unauthorized() from exc
    except urllib.error.URLError as exc:
        AUTH_LOGGER.warning("Auth lookup failed reason=%s", exc.reason)
        raise Unauthorized() from exc
    except OSError as exc:
        AUTH_LOGGER.warning("Auth lookup failed reason=%s", exc)
        raise Unauthorized() from exc
    except json.JSONDecodeError as exc:
        AUTH_LOGGER.warning("Auth lookup returned invalid JSON")
        raise Unauthorized() from exc
    if not isinstance(payload, dict) or not str(payload.get("id") or "").strip():
        raise Unauthorized()
    return payload


def resolve_caller(db: Session, user_id: str) -> CallerContext:
    outcome = run_rows(
        db,
        select(Profile.tenant_id, Profile.role).where(Profile.id == user_id),
        label="profiles",
    )
    if not outcome.ok or not outcome.rows:
        AUTH_LOGGER.warning("Access denied user_id=%s reason=profile_missing", user_id)
        raise AccessDenied()
    row = outcome.rows[0]
    tenant_id = row.get("tenant_id")
    role = str(row.get("role") or "").strip()
    if not tenant_id:
        AUTH_LOGGER.warning("Access denied user_id=%s reason=no_tenant", user_id)
        raise AccessDenied()
    if role not in TENANT_ROLES:
        AUTH_LOGGER.warning("Access denied user_id=%s reason=role role=%s", user_id, role)
        raise AccessDenied()
    return CallerContext(user_id=user_id, tenant_id=str(tenant_id), role=role)


def require_role(caller: CallerContext, allowed_roles: frozenset[str]) -> None:
    if caller.role not in allowed_roles:
        AUTH_LOGGER.warning(
            "Access denied user_id=%s tenant_id=%s reason=role_required role=%s",
            caller.user_id,
            caller.tenant_id,
            caller.role,
        )
        raise AccessDenied()
