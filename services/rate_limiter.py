"""
In-memory rate limiter: per-client sliding window.
"""
import time
import threading
from collections import defaultdict
from functools import wraps
from flask import request, jsonify

from config import Config


class RateLimiter:
    """Simple in-memory sliding-window rate limiter."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60, message: str = "Rate limit exceeded"):
        self.max_requests = max_requests
        self.window = window_seconds
        self.message = message
        self._requests = defaultdict(list)  # key -> list of timestamps
        self._lock = threading.Lock()

    def _cleanup(self, key: str, now: float):
        """Remove expired timestamps, and the key itself once empty."""
        cutoff = now - self.window
        self._requests[key] = [t for t in self._requests[key] if t > cutoff]
        if not self._requests[key]:
            del self._requests[key]

    def is_allowed(self, key: str) -> tuple:
        """Check if request is allowed. Returns (allowed, remaining, reset_at)."""
        now = time.time()
        with self._lock:
            self._cleanup(key, now)
            current = len(self._requests[key])
            if current >= self.max_requests:
                reset_at = self._requests[key][0] + self.window
                return False, 0, reset_at
            self._requests[key].append(now)
            remaining = self.max_requests - current - 1
            return True, remaining, now + self.window

    def reset(self):
        with self._lock:
            self._requests.clear()


# Global rate limiter instances
_api_limiter = RateLimiter(
    max_requests=Config.RATE_LIMIT_PER_MINUTE, window_seconds=60,
    message="Too many requests, please try again later.",
)
_sync_limiter = RateLimiter(
    max_requests=Config.SYNC_RATE_LIMIT_PER_MINUTE, window_seconds=60,
    message="Sync rate limited. Try again in a minute.",
)


def rate_limit(limiter=None):
    """Decorator: rate limit by client IP."""
    if limiter is None:
        limiter = _api_limiter

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            key = request.remote_addr or 'unknown'
            allowed, remaining, reset_at = limiter.is_allowed(key)

            if not allowed:
                resp = jsonify({
                    "error": limiter.message,
                    "retry_after": max(0, int(reset_at - time.time())),
                })
                resp.status_code = 429
                resp.headers['Retry-After'] = str(max(1, int(reset_at - time.time())))
                resp.headers['X-RateLimit-Remaining'] = '0'
                return resp

            response = f(*args, **kwargs)
            if hasattr(response, 'headers'):
                response.headers['X-RateLimit-Remaining'] = str(remaining)
            return response
        return decorated
    return decorator


def get_sync_limiter():
    """Get the sync-trigger rate limiter."""
    return _sync_limiter
