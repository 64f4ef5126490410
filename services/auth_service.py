"""
Authentication for the manual sync trigger: shared API key in X-API-Key.
"""
import hmac
import secrets
import logging
from functools import wraps
from flask import request, jsonify

from config import Config

logger = logging.getLogger(__name__)

_api_key = None


def get_api_key() -> str:
    """Configured API key, or a random one generated once per process."""
    global _api_key
    if _api_key is None:
        if Config.API_KEY:
            _api_key = Config.API_KEY
        else:
            _api_key = secrets.token_hex(32)
            logger.warning("No API_KEY set. Generated: %s... Set API_KEY env var for production.",
                           _api_key[:8])
    return _api_key


def set_api_key(key: str):
    """Override the active key (used at startup and by tests)."""
    global _api_key
    _api_key = key


def verify_api_key(raw_key: str) -> bool:
    if not raw_key:
        return False
    return hmac.compare_digest(raw_key.encode(), get_api_key().encode())


def require_api_key(f):
    """Decorator: require the shared API key in the X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not verify_api_key(request.headers.get('X-API-Key', '')):
            return jsonify({"error": "Unauthorized. X-API-Key header required."}), 401
        return f(*args, **kwargs)
    return decorated
