"""Redis-backed rate limiter middleware."""
import logging
import time
from typing import Optional, Tuple
import redis
from fastapi import Request
from fastapi.responses import JSONResponse
from jose import jwt, JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from config import RATE_LIMIT_PER_MINUTE_IP, RATE_LIMIT_PER_MINUTE_USER
from monitoring import rate_limit_exceeded_counter, suspicious_activity_counter

logger = logging.getLogger(__name__)

# status code -> (pattern name, threshold within SUSPICIOUS_WINDOW)
SUSPICIOUS_PATTERNS = {
    401: ("credential_stuffing", 5),
    403: ("privilege_probing", 10),
    404: ("endpoint_scanning", 10),
}
SUSPICIOUS_4XX_THRESHOLD = 20
SUSPICIOUS_WINDOW = 300


def user_id_from_header(auth_header: Optional[str]) -> Optional[str]:
    """
    Read the user id claim of a bearer token without verifying it.

    Only used to pick a rate limit bucket; authentication happens in the
    route dependencies.
    """
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    try:
        claims = jwt.get_unverified_claims(parts[1])
    except JWTError:
        return None
    user_id = claims.get("id")
    return str(user_id) if user_id is not None else None


class RedisRateLimiter(BaseHTTPMiddleware):
    """
    Sliding window rate limiter shared by every service instance.

    Two tiers are checked per request: the client IP and, when the
    request carries a bearer token, the user id claim. Redis errors fail
    open.
    """

    def __init__(
        self,
        app,
        redis_client: redis.Redis,
        requests_per_minute_ip: int = RATE_LIMIT_PER_MINUTE_IP,
        requests_per_minute_user: int = RATE_LIMIT_PER_MINUTE_USER,
        window_seconds: int = 60
    ):
        """
        Initialize Redis-backed rate limiter.

        Args:
            app: FastAPI application
            redis_client: Redis connection
            requests_per_minute_ip: Max requests per IP per window
            requests_per_minute_user: Max requests per user per window
            window_seconds: Sliding window size in seconds
        """
        super().__init__(app)
        self.redis = redis_client
        self.requests_per_minute_ip = requests_per_minute_ip
        self.requests_per_minute_user = requests_per_minute_user
        self.window_seconds = window_seconds

    def _check_rate_limit(self, key: str, limit: int, window: int) -> Tuple[bool, int]:
        """
        Check rate limit using a Redis sorted set of request timestamps.

        Returns:
            Tuple of (is_allowed, current_count)
        """
        try:
            current_time = time.time()

            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, current_time - window)
            pipe.zcard(key)
            pipe.zadd(key, {str(current_time): current_time})
            pipe.expire(key, window + 1)
            results = pipe.execute()

            # Count before adding current request
            count = results[1]
            return count < limit, count + 1

        except redis.RedisError as e:
            logger.error("Redis rate limit error", extra={"error": str(e)})
            return True, 0

    def _reject(self, limit_type: str, limit: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "code": "rate_limited",
                "message": f"Rate limit exceeded for {limit_type}. Maximum {limit} requests per minute."
            },
            headers={"Retry-After": str(self.window_seconds)}
        )

    async def dispatch(self, request: Request, call_next):
        """Apply the IP tier, then the user tier, then run the request."""
        client_ip = request.client.host if request.client else "unknown"
        if "x-forwarded-for" in request.headers:
            client_ip = request.headers["x-forwarded-for"].split(",")[0].strip()

        user_id = user_id_from_header(request.headers.get("authorization"))

        ip_allowed, ip_count = self._check_rate_limit(
            f"rate:ip:{client_ip}",
            self.requests_per_minute_ip,
            self.window_seconds
        )
        if not ip_allowed:
            rate_limit_exceeded_counter.add(1, {"limit_type": "ip"})
            logger.warning("Rate limit exceeded for IP", extra={
                "client_ip": client_ip,
                "count": ip_count,
                "limit": self.requests_per_minute_ip
            })
            return self._reject("IP", self.requests_per_minute_ip)

        if user_id:
            user_allowed, user_count = self._check_rate_limit(
                f"rate:user:{user_id}",
                self.requests_per_minute_user,
                self.window_seconds
            )
            if not user_allowed:
                rate_limit_exceeded_counter.add(1, {"limit_type": "user"})
                logger.warning("Rate limit exceeded for user", extra={
                    "user_id": user_id,
                    "count": user_count,
                    "limit": self.requests_per_minute_user
                })
                return self._reject("user", self.requests_per_minute_user)

        response = await call_next(request)

        self._detect_suspicious_activity(response.status_code, client_ip)

        return response

    def _record(self, key: str, now: float) -> int:
        pipe = self.redis.pipeline()
        pipe.zadd(key, {str(now): now})
        pipe.expire(key, SUSPICIOUS_WINDOW + 1)
        pipe.zcount(key, now - SUSPICIOUS_WINDOW, now)
        return pipe.execute()[2]

    def _detect_suspicious_activity(self, status_code: int, client_ip: str) -> None:
        """
        Count error responses per IP and flag bursts.

        401 bursts suggest credential stuffing, 403 bursts probing of admin
        routes, 404 bursts endpoint scanning, and any 4xx burst general abuse.
        """
        if not 400 <= status_code < 500:
            return

        try:
            now = time.time()

            if status_code in SUSPICIOUS_PATTERNS:
                pattern, threshold = SUSPICIOUS_PATTERNS[status_code]
                count = self._record(f"suspicious:{status_code}:{client_ip}", now)
                if count >= threshold:
                    suspicious_activity_counter.add(1, {"type": pattern})
                    logger.warning("Suspicious activity detected", extra={
                        "type": pattern,
                        "client_ip": client_ip,
                        "count": count,
                        "window_seconds": SUSPICIOUS_WINDOW
                    })

            count = self._record(f"suspicious:4xx:{client_ip}", now)
            if count >= SUSPICIOUS_4XX_THRESHOLD:
                suspicious_activity_counter.add(1, {"type": "abuse"})
                logger.warning("Suspicious activity detected", extra={
                    "type": "abuse",
                    "client_ip": client_ip,
                    "count": count,
                    "window_seconds": SUSPICIOUS_WINDOW
                })

        except redis.RedisError as e:
            logger.error("Error detecting suspicious activity", extra={"error": str(e)})
