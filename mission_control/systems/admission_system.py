# mission_control/systems/admission_system.py
import hashlib
import http
import json
import logging
import math
from functools import wraps
from typing import Callable, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, make_response, request

from mission_control.exceptions import StoreUnavailableError
from mission_control.kv_store import KeyValueStore
from mission_control.models import RateLimitConfig, RateLimitResult
from mission_control.utils.clock import ms_to_iso, now_ms

logger = logging.getLogger(__name__)

BURST_WINDOW_MS = 1000
TTL_BUFFER_SEC = 60


class RateLimiter:
    """
    Sliding-window rate limiter with a one-second burst cap.

    The request log for each (identifier, endpoint) key lives in the shared
    store as a JSON list of epoch-millisecond timestamps. Reads and writes
    are not atomic: concurrent workers racing on the same key can each admit
    a request off the same snapshot, so the limit is approximate under
    concurrency by at most the number of racing writers.
    """

    def __init__(self, store: KeyValueStore, config: Optional[RateLimitConfig] = None,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.config = config or RateLimitConfig()
        self._clock = clock

    def _key(self, identifier: str, endpoint: str) -> str:
        return f"{self.config.key_prefix}:{identifier}:{endpoint}"

    def check_limit(self, identifier: str, endpoint: str = "global") -> RateLimitResult:
        """Decides whether one more request for this key is admitted."""
        now = self._clock()
        window_start = now - self.config.window_ms
        key = self._key(identifier, endpoint)

        try:
            requests_log = self._get_window(key)
        except StoreUnavailableError as e:
            logger.warning(f"Rate limit window unavailable for {key}: {e}")
            return self._store_fault_result(now)

        valid = [ts for ts in requests_log if ts > window_start]

        recent = [ts for ts in valid if ts > now - BURST_WINDOW_MS]
        if len(recent) >= self.config.max_burst:
            return RateLimitResult(
                allowed=False,
                limit=self.config.max_requests,
                remaining=0,
                reset_at=min(valid) + self.config.window_ms,
                retry_after=1,
            )

        if len(valid) >= self.config.max_requests:
            reset_at = min(valid) + self.config.window_ms
            return RateLimitResult(
                allowed=False,
                limit=self.config.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(1, math.ceil((reset_at - now) / 1000)),
            )

        valid.append(now)
        try:
            self._save_window(key, valid)
        except StoreUnavailableError as e:
            logger.warning(f"Rate limit window not persisted for {key}: {e}")
            if not self.config.fail_open:
                return self._store_fault_result(now)

        return RateLimitResult(
            allowed=True,
            limit=self.config.max_requests,
            remaining=self.config.max_requests - len(valid),
            reset_at=now + self.config.window_ms,
        )

    def _store_fault_result(self, now: int) -> RateLimitResult:
        if self.config.fail_open:
            return RateLimitResult(
                allowed=True,
                limit=self.config.max_requests,
                remaining=self.config.max_requests - 1,
                reset_at=now + self.config.window_ms,
            )
        return RateLimitResult(
            allowed=False,
            limit=self.config.max_requests,
            remaining=0,
            reset_at=now + BURST_WINDOW_MS,
            retry_after=1,
        )

    def _get_window(self, key: str) -> List[int]:
        raw = self.store.get(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
            return [int(ts) for ts in data.get("requests", [])]
        except (ValueError, TypeError, AttributeError):
            logger.warning(f"Discarding malformed rate limit window at {key}")
            return []

    def _save_window(self, key: str, timestamps: List[int]) -> None:
        ttl = math.ceil(self.config.window_ms / 1000) + TTL_BUFFER_SEC
        self.store.put(key, json.dumps({"requests": timestamps}).encode(), ttl_seconds=ttl)

    # --- HTTP helpers ---

    @staticmethod
    def get_identifier(req, api_key: Optional[str] = None) -> str:
        """Client identity: hashed credential when supplied, else the client address."""
        if api_key:
            return f"key:{hashlib.sha256(api_key.encode()).hexdigest()[:16]}"
        return f"ip:{client_address(req)}"

    @staticmethod
    def apply_headers(response: Response, result: RateLimitResult) -> Response:
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = ms_to_iso(result.reset_at)
        if not result.allowed and result.retry_after:
            response.headers["Retry-After"] = str(result.retry_after)
        return response

    @classmethod
    def error_response(cls, result: RateLimitResult) -> Response:
        response = jsonify({
            "error": "Too Many Requests",
            "message": "Rate limit exceeded. Please try again later.",
            "retryAfter": result.retry_after,
        })
        response.status_code = http.HTTPStatus.TOO_MANY_REQUESTS
        return cls.apply_headers(response, result)


def client_address(req) -> str:
    """
    The socket peer address. Forwarded headers are consulted only when the
    peer is unknown; trusted proxies are unwrapped by ProxyFix in the factory
    before this runs. Clients with no address share the 'unknown' bucket.
    """
    if req.remote_addr:
        return req.remote_addr
    forwarded = req.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or "unknown"


def extract_credential(req) -> Optional[str]:
    """The raw credential a client presented, used only to derive its quota key."""
    api_key = req.headers.get("X-API-Key")
    if api_key:
        return api_key
    auth_header = req.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):]
    return None


class AdmissionSystem:
    """
    Request gate for the HTTP surface with two quota tiers: clients that
    present credentials get the authenticated tier, everyone else shares the
    public one.
    """

    def __init__(self):
        self.app: Optional[Flask] = None
        self.limiters: Dict[str, RateLimiter] = {}
        self.rejections = 0
        self._initialized = False
        logger.info("AdmissionSystem instance created.")

    def init_app(self, app: Flask, store: KeyValueStore, clock: Callable[[], int] = now_ms):
        self.app = app
        cfg = app.config
        fail_open = cfg.get("RATE_LIMIT_FAIL_OPEN", True)
        window_ms = cfg.get("RATE_LIMIT_WINDOW_MS", 60000)
        self.limiters = {
            "authenticated": RateLimiter(store, RateLimitConfig(
                window_ms=window_ms,
                max_requests=cfg.get("RATE_LIMIT_AUTH_MAX_REQUESTS", 100),
                max_burst=cfg.get("RATE_LIMIT_AUTH_MAX_BURST", 10),
                fail_open=fail_open,
            ), clock=clock),
            "public": RateLimiter(store, RateLimitConfig(
                window_ms=window_ms,
                max_requests=cfg.get("RATE_LIMIT_PUBLIC_MAX_REQUESTS", 20),
                max_burst=cfg.get("RATE_LIMIT_PUBLIC_MAX_BURST", 5),
                fail_open=fail_open,
            ), clock=clock),
        }
        self.rejections = 0
        self._initialized = True
        logger.info(f"AdmissionSystem configured (fail_open={fail_open}).")

    def select(self, req, tier: Optional[str] = None) -> Tuple[RateLimiter, str]:
        """Picks the limiter for a request and derives its quota identifier."""
        credential = extract_credential(req)
        if tier is None:
            tier = "authenticated" if credential else "public"
        return self.limiters[tier], RateLimiter.get_identifier(req, credential)

    def check(self, req, tier: Optional[str] = None) -> RateLimitResult:
        limiter, identifier = self.select(req, tier)
        result = limiter.check_limit(identifier, req.path)
        if not result.allowed:
            self.rejections += 1
            logger.info(f"Rate limit exceeded for {identifier} on {req.path} (retry after {result.retry_after}s)")
        return result


# Singleton instance
admission_system = AdmissionSystem()


def rate_limited(tier: Optional[str] = None) -> Callable:
    """
    Gates a Flask view on the admission system. The decision is threaded
    through to the view's own response so the quota headers ride along.
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def wrapper(*args, **kwargs):
            result = admission_system.check(request, tier)
            if not result.allowed:
                return RateLimiter.error_response(result)
            response = make_response(f(*args, **kwargs))
            return RateLimiter.apply_headers(response, result)
        return wrapper
    return decorator


# --- Functions for status page ---

def get_admission_status() -> Dict:
    """Health check for the Admission System."""
    if admission_system._initialized:
        return {
            "active": True,
            "healthy": True,
            "info": "Admission control operational",
            "tiers": sorted(admission_system.limiters),
            "rejections": admission_system.rejections,
        }
    return {"active": False, "healthy": False, "info": "Admission System not initialized"}
