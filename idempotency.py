"""
idempotency.py
==============
Double-submission guard for mutating requests.

A request is fingerprinted from (identity, action, path, body). The first
request claims the fingerprint with one atomic SET NX EX in Redis and runs;
any identical request arriving while the key lives is rejected with
AlreadyProcessing and never reaches the action. The key is not released
when the action finishes: it expires after its TTL. A request that fails
validation never claims one.

If Redis cannot be reached the guard fails open and lets the request through.
"""

import functools
import hashlib
import json
import logging
from typing import Any, Callable, Optional, TypeVar

from fastapi import Depends, Request

from auth import Identity, get_identity
from cache import RedisCache
from errors import AlreadyProcessing, DependencyUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")

# Claims the lock when called; see IdempotencyLock.acquire.
LockClaim = Callable[[], bool]


def _body_digest(body: Any) -> str:
    if body is None or body == b"" or body == "":
        raw = b"{}"
    elif isinstance(body, (bytes, bytearray)):
        try:
            # Same JSON with different key order or spacing is the same action.
            raw = json.dumps(json.loads(body), sort_keys=True, separators=(",", ":")).encode()
        except ValueError:
            raw = bytes(body)
    else:
        raw = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode()
    return hashlib.sha256(raw).hexdigest()


def fingerprint(identity: str, action: str, path: str, body: Any) -> str:
    digest = hashlib.sha256(
        "\n".join((identity, action, path, _body_digest(body))).encode()
    ).hexdigest()
    return f"lock:{action}:{digest}"


class IdempotencyLock:
    def __init__(self, store: RedisCache, default_ttl: int = 5):
        if default_ttl <= 0:
            raise ValueError("Lock TTL must be positive")
        self.store = store
        self.default_ttl = default_ttl

    def acquire(
        self, identity: str, action: str, path: str, body: Any, ttl_seconds: Optional[int] = None
    ) -> bool:
        """
        Claim the fingerprint or raise AlreadyProcessing.

        Returns False when the store was unreachable and no lock was taken.
        """
        key = fingerprint(identity, action, path, body)
        ttl = ttl_seconds or self.default_ttl
        try:
            created = self.store.set_if_absent(key, "locked", ttl)
        except DependencyUnavailable as exc:
            logger.warning(f"Idempotency lock skipped for {action} ({identity}): {exc.message}")
            return False
        if not created:
            logger.warning(f"Double-hit prevented: {action} {path} ({identity})")
            raise AlreadyProcessing("Request is already being processed. Please wait a moment.")
        return True

    def with_lock(
        self,
        identity: str,
        action: str,
        path: str,
        body: Any,
        ttl_seconds: Optional[int],
        next: Callable[[], T],
    ) -> T:
        self.acquire(identity, action, path, body, ttl_seconds)
        return next()


def lock_request(action: str, ttl_seconds: Optional[int] = None):
    """
    Route dependency for one mutating action guarded against double submission.

    It resolves to a LockClaim that the route calls as its first statement,
    after FastAPI has validated the request: a request rejected with 422
    never claims a fingerprint.
    """

    async def dependency(request: Request, identity: Identity = Depends(get_identity)) -> LockClaim:
        if request.method in SAFE_METHODS:
            return lambda: False
        lock: IdempotencyLock = request.app.state.lock
        body = await request.body()
        return functools.partial(lock.acquire, identity.key, action, request.url.path, body, ttl_seconds)

    return dependency
