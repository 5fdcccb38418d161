# Overview: Identity pass-through and role decorators for API routes.

from dataclasses import dataclass
from functools import wraps

from flask import g, jsonify, request

from .errors import AccessDenied
from .validation import ROLES, STAFF_ROLES


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def require_identity(f):
    """
    Load the caller's identity placed on the request by the authentication
    collaborator.

    Sets g.identity (Identity). Returns 401 if X-User-Id is missing or not a
    positive integer, or X-User-Role is not a known role.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_user = (request.headers.get("X-User-Id") or "").strip()
        role = (request.headers.get("X-User-Role") or "client").strip().lower()

        if not raw_user.isdigit() or int(raw_user) <= 0:
            return jsonify({"error": "AUTHENTICATION_REQUIRED", "message": "Missing or invalid X-User-Id"}), 401
        if role not in ROLES:
            return jsonify({"error": "AUTHENTICATION_REQUIRED", "message": f"Unknown role {role!r}"}), 401

        g.identity = Identity(user_id=int(raw_user), role=role)
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Restrict a route to the given roles. Must be applied after require_identity.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            identity = getattr(g, "identity", None)
            if identity is None:
                return jsonify({"error": "AUTHENTICATION_REQUIRED", "message": "Identity required"}), 401
            if identity.role not in roles:
                return jsonify({
                    "error": AccessDenied.code,
                    "message": f"Role {identity.role!r} may not perform this action",
                    "details": {"required_roles": list(roles)},
                }), 403
            return f(*args, **kwargs)

        return decorated_function

    return decorator


def ensure_self_or_staff(user_id: int) -> None:
    """Clients may only act on their own records."""
    identity = g.identity
    if not identity.is_staff and identity.user_id != user_id:
        raise AccessDenied(
            "Clients may only access their own records",
            details={"user_id": user_id},
        )
