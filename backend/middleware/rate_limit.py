"""Failed-login rate limiting and account lockout.

Two independent counters are kept for every failed login:

- ``ip:<address>``: per client IP, fixed window. Once the ceiling is
  reached the IP gets 429 until the window resets.
- ``account:<email>``: per account, fixed window with a lower ceiling.
  Reaching it locks the account (423) for a cool-down period no matter
  which IP the next attempt comes from.

Only failed logins increment the counters; a successful login clears both.
The login flow claims its slot before the password is verified, so a burst
of concurrent guesses cannot slip past the ceilings while bcrypt runs.

The limiter is a plain object built once per process in the app lifespan
and stored on ``app.state``. Counters live in a backend: in process memory
by default, or in Redis when REDIS_URL is set so every worker shares them.

SECURITY NOTES:
- X-Forwarded-For header is only trusted when TRUSTED_PROXIES is configured.
  This prevents IP spoofing attacks.
"""

import asyncio
import ipaddress
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from fastapi import Request

from config import AppMode, Settings, get_settings

logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"


@dataclass
class AttemptRecord:
    attempts: int
    first_attempt_at: float
    locked_until: Optional[float] = None

    def window_expired(self, now: float, window_seconds: int) -> bool:
        return self.first_attempt_at + window_seconds <= now

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[int] = None


@dataclass
class AccountLockStatus:
    locked: bool
    retry_after: Optional[int] = None


@dataclass
class FailureOutcome:
    """What recording one failed attempt did to the IP and account counters."""

    ip: RateLimitDecision
    account: AccountLockStatus


class AttemptBackend(ABC):
    """Storage for attempt counters. Every method is atomic per key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[AttemptRecord]:
        pass

    @abstractmethod
    async def claim(
        self,
        key: str,
        now: float,
        window_seconds: int,
        limit: int,
        lock_until: Optional[float] = None,
    ) -> Tuple[bool, AttemptRecord]:
        """
        Count one attempt unless the key is already at its ceiling.

        A lapsed window or an expired lock starts a fresh window. Returns
        ``(False, record)`` without counting when the key is locked or has
        ``limit`` attempts in the current window. When ``lock_until`` is
        given, the attempt that brings the count to ``limit`` also locks the
        key until then.
        """
        pass

    @abstractmethod
    async def reset(self, key: str) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemoryAttemptBackend(AttemptBackend):
    """
    Counters in process memory, guarded by one asyncio.Lock.

    WARNING - NOT PROCESS-SAFE: each worker keeps its own counters and all of
    them are lost on restart. Use RedisAttemptBackend with several workers.

    LRU eviction keeps memory bounded when many distinct IPs show up.
    """

    MAX_KEYS = 10000

    def __init__(self):
        self._records: Dict[str, AttemptRecord] = {}
        self._last_access: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[AttemptRecord]:
        async with self._lock:
            record = self._records.get(key)
            return replace(record) if record else None

    async def claim(
        self,
        key: str,
        now: float,
        window_seconds: int,
        limit: int,
        lock_until: Optional[float] = None,
    ) -> Tuple[bool, AttemptRecord]:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.is_locked(now):
                return False, replace(record)

            if len(self._records) >= self.MAX_KEYS and key not in self._records:
                self._evict_lru()
            self._last_access[key] = now

            if (
                record is None
                or record.locked_until is not None
                or record.window_expired(now, window_seconds)
            ):
                record = AttemptRecord(attempts=0, first_attempt_at=now)
                self._records[key] = record

            if record.attempts >= limit:
                return False, replace(record)

            record.attempts += 1
            if lock_until is not None and record.attempts >= limit:
                record.locked_until = lock_until
            return True, replace(record)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._records.pop(key, None)
            self._last_access.pop(key, None)

    def _evict_lru(self) -> None:
        # Evict 10% of keys or at least 100 keys to reduce eviction frequency
        num_to_evict = max(100, len(self._records) // 10)
        sorted_keys = sorted(self._last_access.items(), key=lambda x: x[1])
        keys_to_evict = [k for k, _ in sorted_keys[:num_to_evict]]
        for key in keys_to_evict:
            self._records.pop(key, None)
            self._last_access.pop(key, None)
        logger.debug(f"Login attempt LRU eviction: removed {len(keys_to_evict)} keys")


class RedisAttemptBackend(AttemptBackend):
    """
    Redis-backed counters shared by every worker.

    Each key is a hash {attempts, first_attempt_at, locked_until}. A claim
    is one Lua script, so the window reset, the increment, the lock and the
    TTL are applied together and concurrent failures are never lost.
    """

    PREFIX = "login_attempts:"

    # KEYS[1] = counter hash
    # ARGV = now, window_seconds, limit, lock_until ("" for no lock)
    _CLAIM_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'attempts', 'first_attempt_at', 'locked_until')
local attempts = tonumber(data[1])
local first = tonumber(data[2])
local locked_until = tonumber(data[3])

if locked_until and locked_until > now then
  return {0, data[1] or '0', data[2] or ARGV[1], data[3]}
end

if attempts == nil or first == nil or locked_until or first + window <= now then
  redis.call('DEL', key)
  attempts = 0
  first = now
  data[2] = ARGV[1]
end

if attempts >= limit then
  return {0, tostring(attempts), data[2], ''}
end

attempts = redis.call('HINCRBY', key, 'attempts', 1)
redis.call('HSETNX', key, 'first_attempt_at', ARGV[1])
local ttl = math.ceil(first + window - now) + 1
local locked = ''
if ARGV[4] ~= '' and attempts >= limit then
  redis.call('HSET', key, 'locked_until', ARGV[4])
  locked = ARGV[4]
  ttl = math.max(ttl, math.ceil(tonumber(ARGV[4]) - now) + 1)
end
redis.call('EXPIRE', key, ttl)
return {1, tostring(attempts), data[2], locked}
"""

    def __init__(self, redis_url: str, client=None):
        self._redis_url = redis_url
        self._redis = client
        self._claim_script = None

    async def _get_redis(self):
        """Lazy initialization of Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await self._redis.ping()
            logger.info("Redis login attempt backend initialized successfully")
        if self._claim_script is None:
            self._claim_script = self._redis.register_script(self._CLAIM_SCRIPT)
        return self._redis

    @staticmethod
    def _to_record(data: dict) -> Optional[AttemptRecord]:
        if not data or "attempts" not in data:
            return None
        locked_until = data.get("locked_until")
        return AttemptRecord(
            attempts=int(data["attempts"]),
            first_attempt_at=float(data.get("first_attempt_at") or 0),
            locked_until=float(locked_until) if locked_until else None,
        )

    async def get(self, key: str) -> Optional[AttemptRecord]:
        client = await self._get_redis()
        return self._to_record(await client.hgetall(self.PREFIX + key))

    async def claim(
        self,
        key: str,
        now: float,
        window_seconds: int,
        limit: int,
        lock_until: Optional[float] = None,
    ) -> Tuple[bool, AttemptRecord]:
        await self._get_redis()
        allowed, attempts, first_attempt_at, locked_until = await self._claim_script(
            keys=[self.PREFIX + key],
            args=[repr(now), window_seconds, limit, repr(lock_until) if lock_until else ""],
        )
        return bool(int(allowed)), AttemptRecord(
            attempts=int(attempts),
            first_attempt_at=float(first_attempt_at),
            locked_until=float(locked_until) if locked_until else None,
        )

    async def reset(self, key: str) -> None:
        client = await self._get_redis()
        await client.delete(self.PREFIX + key)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._claim_script = None


class LoginRateLimiter:
    """
    Per-IP rate limit and per-account lockout for the login endpoint.

    ``clock`` returns epoch seconds; tests pass a fake one.
    """

    def __init__(
        self,
        backend: AttemptBackend,
        ip_max_attempts: int = 10,
        ip_window_seconds: int = 900,
        account_max_attempts: int = 5,
        account_window_seconds: int = 900,
        lock_duration_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.ip_max_attempts = ip_max_attempts
        self.ip_window_seconds = ip_window_seconds
        self.account_max_attempts = account_max_attempts
        self.account_window_seconds = account_window_seconds
        self.lock_duration_seconds = lock_duration_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        backend: Optional[AttemptBackend] = None,
        clock: Callable[[], float] = time.time,
    ) -> "LoginRateLimiter":
        settings = settings or get_settings()
        if backend is None:
            if settings.REDIS_URL:
                logger.info("Using Redis login attempt backend")
                backend = RedisAttemptBackend(settings.REDIS_URL)
            else:
                message = (
                    "Using in-memory login attempt counters. They are lost on restart. "
                    "Set REDIS_URL for production use with multiple instances."
                )
                if settings.APP_MODE == AppMode.DEV:
                    logger.debug(message)
                else:
                    logger.warning(message)
                backend = InMemoryAttemptBackend()

        return cls(
            backend,
            ip_max_attempts=settings.RATE_LIMIT_IP_MAX_ATTEMPTS,
            ip_window_seconds=settings.RATE_LIMIT_IP_WINDOW_SECONDS,
            account_max_attempts=settings.RATE_LIMIT_ACCOUNT_MAX_ATTEMPTS,
            account_window_seconds=settings.RATE_LIMIT_ACCOUNT_WINDOW_SECONDS,
            lock_duration_seconds=settings.RATE_LIMIT_LOCK_DURATION_SECONDS,
            clock=clock,
        )

    @staticmethod
    def _ip_key(ip: Optional[str]) -> str:
        return f"ip:{ip or UNKNOWN_IP}"

    @staticmethod
    def _account_key(email: str) -> str:
        return f"account:{email.strip().lower()}"

    def _ip_rejection(self, ip: Optional[str], record: AttemptRecord, now: float) -> RateLimitDecision:
        retry_after = math.ceil(record.first_attempt_at + self.ip_window_seconds - now)
        logger.warning(
            f"rate_limit_violation: ip={ip or UNKNOWN_IP} attempts={record.attempts}",
            extra={"event": "rate_limit_violation", "keyType": "ip", "attempts": record.attempts},
        )
        return RateLimitDecision(allowed=False, retry_after=max(1, retry_after))

    def _account_rejection(self, record: AttemptRecord, now: float) -> AccountLockStatus:
        logger.warning(
            f"rate_limit_violation: account locked attempts={record.attempts}",
            extra={"event": "rate_limit_violation", "keyType": "account", "attempts": record.attempts},
        )
        locked_until = record.locked_until or now + self.lock_duration_seconds
        return AccountLockStatus(locked=True, retry_after=max(1, math.ceil(locked_until - now)))

    async def check_ip_rate_limit(self, ip: Optional[str]) -> RateLimitDecision:
        now = self._clock()
        record = await self.backend.get(self._ip_key(ip))
        if record is None or record.window_expired(now, self.ip_window_seconds):
            return RateLimitDecision(allowed=True)

        if record.attempts >= self.ip_max_attempts:
            return self._ip_rejection(ip, record, now)

        return RateLimitDecision(allowed=True)

    async def check_account_lock(self, email: str) -> AccountLockStatus:
        """Read-only; an expired lock is reset by the next claim on the key."""
        now = self._clock()
        record = await self.backend.get(self._account_key(email))
        if record is None or not record.is_locked(now):
            return AccountLockStatus(locked=False)

        return self._account_rejection(record, now)

    async def record_failure(self, ip: Optional[str], email: Optional[str] = None) -> FailureOutcome:
        """
        Count one failed attempt against the IP and, when given, the account.

        Login calls this before verifying the password and ``record_success``
        afterwards on a match. An attempt that finds the IP at its ceiling or
        the account locked is not counted and comes back rejected.
        """
        now = self._clock()
        ip_allowed, ip_record = await self.backend.claim(
            self._ip_key(ip), now, self.ip_window_seconds, self.ip_max_attempts
        )
        if not ip_allowed:
            return FailureOutcome(
                ip=self._ip_rejection(ip, ip_record, now), account=AccountLockStatus(locked=False)
            )

        outcome = FailureOutcome(ip=RateLimitDecision(allowed=True), account=AccountLockStatus(locked=False))
        if not email:
            return outcome

        account_allowed, record = await self.backend.claim(
            self._account_key(email),
            now,
            self.account_window_seconds,
            self.account_max_attempts,
            lock_until=now + self.lock_duration_seconds,
        )
        if not account_allowed:
            outcome.account = self._account_rejection(record, now)
        elif record.locked_until is not None:
            logger.warning(
                f"Account locked for {self.lock_duration_seconds}s after "
                f"{record.attempts} failed login attempts",
                extra={"event": "account_locked", "attempts": record.attempts},
            )
        return outcome

    async def record_success(self, ip: Optional[str], email: Optional[str] = None) -> None:
        await self.backend.reset(self._ip_key(ip))
        if email:
            await self.backend.reset(self._account_key(email))

    async def close(self) -> None:
        await self.backend.close()


def _parse_trusted_proxies() -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """
    Parse trusted proxy configuration from settings.

    Returns list of IP networks that are trusted to set X-Forwarded-For headers.
    Without TRUSTED_PROXIES nothing is trusted and forwarded headers are ignored.
    """
    trusted_proxies_str = get_settings().TRUSTED_PROXIES
    proxy_strings = []
    if trusted_proxies_str:
        proxy_strings = [p.strip() for p in trusted_proxies_str.split(",") if p.strip()]

    networks = []
    for proxy in proxy_strings:
        try:
            networks.append(ipaddress.ip_network(proxy, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid trusted proxy network '{proxy}': {e}")

    return networks


def _is_ip_trusted(ip: str, trusted_networks: List) -> bool:
    """Check if an IP address is in any of the trusted networks."""
    try:
        ip_addr = ipaddress.ip_address(ip)
        return any(ip_addr in network for network in trusted_networks)
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """
    Securely extract client IP address from request.

    Implements the "rightmost untrusted IP" algorithm: forwarded headers are
    only examined when the direct peer is a trusted proxy, and the chain is
    walked right to left until the first address that is not a proxy.
    Returns "unknown" when the peer address is unavailable.
    """
    trusted_networks = _parse_trusted_proxies()

    direct_ip = request.client.host if request.client else None
    if not direct_ip:
        return UNKNOWN_IP

    if not _is_ip_trusted(direct_ip, trusted_networks):
        return direct_ip

    forwarded_for = request.headers.get("X-Forwarded-For")

    if not forwarded_for:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            try:
                ipaddress.ip_address(ip)
                return ip
            except ValueError:
                logger.warning(f"Invalid X-Real-IP header: {real_ip}")
                return direct_ip
        return direct_ip

    ips = [ip.strip() for ip in forwarded_for.split(",")]

    for ip in reversed(ips):
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.warning(f"Invalid IP in X-Forwarded-For: {ip}")
            continue

        if not _is_ip_trusted(ip, trusted_networks):
            return ip

    # All IPs in the chain are trusted proxies, use the leftmost (original)
    if ips:
        try:
            ipaddress.ip_address(ips[0])
            return ips[0]
        except ValueError:
            pass

    return direct_ip
