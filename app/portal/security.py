import hashlib
import hmac
import secrets
from collections.abc import Mapping
from typing import Any

from flask import Request, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

CSRF_HEADER = "X-CSRF-Token"

PASSWORD_RESET_SALT = "password-reset"
PASSWORD_RESET_MAX_AGE = 24 * 60 * 60

# Mutating requests under these prefixes carry their own authentication
# (session bootstrap, signed webhooks, API keys, invitation tokens).
CSRF_EXEMPT_PREFIXES = (
    "/auth/",
    "/api/webhooks/",
    "/api/leads/",
    "/api/invitations/accept",
)


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def csrf_exempt(path: str) -> bool:
    return path.startswith(CSRF_EXEMPT_PREFIXES)


def validate_csrf(req: Request) -> bool:
    """Validate the CSRF token from the X-CSRF-Token header or the JSON body."""
    token = req.headers.get(CSRF_HEADER)
    if not token and req.is_json:
        json_data = req.get_json(silent=True)
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and hmac.compare_digest(str(token), str(expected)))


# ---------- password reset tokens ----------

def _reset_serializer(config: Mapping[str, Any]) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(config["SECRET_KEY"], salt=PASSWORD_RESET_SALT)


def _password_fingerprint(password_hash: str) -> str:
    # Changing the password invalidates outstanding tokens.
    return hashlib.sha256(password_hash.encode("utf-8")).hexdigest()[:16]


def make_password_reset_token(config: Mapping[str, Any], user_id: int, password_hash: str) -> str:
    return _reset_serializer(config).dumps({"uid": user_id, "pw": _password_fingerprint(password_hash)})


def read_password_reset_token(config: Mapping[str, Any], token: str) -> tuple[int, str] | None:
    """Return (user_id, fingerprint) or None for a bad or expired token."""
    try:
        data = _reset_serializer(config).loads(token, max_age=PASSWORD_RESET_MAX_AGE)
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("uid"), int):
        return None
    return data["uid"], str(data.get("pw") or "")


def password_fingerprint_matches(password_hash: str, fingerprint: str) -> bool:
    return hmac.compare_digest(_password_fingerprint(password_hash), fingerprint)


def password_reset_link(config: Mapping[str, Any], token: str) -> str:
    return f"{config.get('APP_URL', '')}/auth/set-password?token={token}"
