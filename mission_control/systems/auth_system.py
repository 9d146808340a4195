# mission_control/systems/auth_system.py
"""
Authentication collaborator for protected actions.

Answers one question: is this request authorized? Callers get either an
identity dict or an AuthError; how tokens are issued is not this module's
concern beyond the small helper used by operators and tests.
"""
import hmac
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import current_app, jsonify, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from mission_control.exceptions import AuthError

logger = logging.getLogger(__name__)

TOKEN_SALT = "mission-control-access"
TOKEN_MAX_AGE_SEC = 24 * 60 * 60


def get_serializer(secret_key: Optional[str] = None) -> URLSafeTimedSerializer:
    """Creates a timed serializer for generating and verifying tokens."""
    secret_key = secret_key or current_app.config.get("SECRET_KEY")
    if not secret_key:
        raise ValueError("SECRET_KEY is not configured.")
    return URLSafeTimedSerializer(secret_key)


def generate_token(subject: str, scope: str = "api", secret_key: Optional[str] = None) -> str:
    return get_serializer(secret_key).dumps({"sub": subject, "scope": scope}, salt=TOKEN_SALT)


def verify_token(token: str, max_age_sec: int = TOKEN_MAX_AGE_SEC) -> Dict[str, Any]:
    try:
        data = get_serializer().loads(token, salt=TOKEN_SALT, max_age=max_age_sec)
    except (SignatureExpired, BadSignature):
        logger.warning("Invalid or expired token received.")
        raise AuthError("Invalid or expired token")
    if not isinstance(data, dict) or "sub" not in data:
        raise AuthError("Invalid or expired token")
    return data


def verify_api_key(key: str) -> bool:
    secret = current_app.config.get("API_KEY_SECRET")
    if not secret:
        return False
    return hmac.compare_digest(key.encode(), secret.encode())


def authenticate(req) -> Dict[str, Any]:
    """Resolves the caller's identity or raises AuthError."""
    auth_header = req.headers.get("Authorization", "")
    api_key = req.headers.get("X-API-Key")

    if auth_header.startswith("Bearer "):
        return verify_token(auth_header[len("Bearer "):])

    if api_key:
        if not verify_api_key(api_key):
            logger.warning("Rejected request with invalid API key.")
            raise AuthError("Invalid API key")
        return {"sub": "api-key-user", "scope": "api"}

    raise AuthError("Missing authentication credentials")


def is_authorized(req) -> bool:
    try:
        authenticate(req)
        return True
    except AuthError:
        return False


def require_auth(f: Callable) -> Callable:
    """Route decorator returning 401 JSON for unauthenticated callers."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            authenticate(request)
        except AuthError as e:
            return jsonify({"error": e.message}), e.status
        return f(*args, **kwargs)
    return wrapper


# --- Function for status page ---
def get_auth_status():
    """Returns the current operational status of the authentication system."""
    has_key = bool(current_app.config.get("API_KEY_SECRET"))
    return {
        "active": True,
        "healthy": True,
        "info": "API keys and bearer tokens accepted" if has_key else "Bearer tokens only",
    }
