from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

_READ = {"crm.leads.read", "crm.messages.read"}
_SELLER = _READ | {
    "crm.leads.create",
    "crm.leads.merge",
    "crm.leads.update",
    "crm.leads.change_stage",
    "crm.leads.close",
    "crm.activities.write",
    "crm.notes.write",
    "crm.messages.convert",
}
_MANAGER = _SELLER | {
    "crm.leads.delete",
    "crm.settings.manage",
    "crm.audit.read",
}

# Bundles granted by a single role claim; any other role is taken as a literal permission.
ROLE_BUNDLES: dict[str, frozenset[str]] = {
    "crm.viewer": frozenset(_READ),
    "crm.seller": frozenset(_SELLER),
    "crm.manager": frozenset(_MANAGER),
}


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    name: str | None = None


def expand_roles(roles: list[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        permissions.add(role)
        permissions.update(ROLE_BUNDLES.get(role, ()))
    return permissions


def decode_bearer_token(token: str) -> AuthUser:
    settings = get_settings()
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    name = payload.get("name")
    return AuthUser(
        sub=str(payload.get("sub", "anonymous")),
        roles=[str(role) for role in roles],
        name=str(name) if name is not None else None,
    )


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    try:
        user = decode_bearer_token(token)
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])
    request.state.user_id = user.sub
    return user
