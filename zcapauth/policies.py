"""
zcapauth refresh policy storage.

A policy governs whether a profile (``controller``) lets one ``delegate``
refresh the capabilities it was given. Updates use optimistic concurrency:
the caller sends the ``sequence`` it last read and the store bumps it by one,
rejecting the write if someone else got there first.

Supports memory and Redis backends.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from zcapauth.errors import (
    DuplicateError,
    InvalidStateError,
    NotFoundError,
    OperationError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RefreshSetting = Union[bool, Dict[str, Any]]


@dataclass
class Policy:
    """
    A refresh policy for one (controller, delegate) pair.

    Attributes:
        controller: Profile id that owns the policy.
        delegate: Controller of the capabilities the policy governs.
        refresh: ``False`` to deny refresh, or ``{"constraints": {...}}``.
        sequence: Optimistic concurrency token.
    """

    controller: str
    delegate: str
    refresh: RefreshSetting = False
    sequence: int = 0

    @property
    def constraints(self) -> Dict[str, Any]:
        if not isinstance(self.refresh, dict):
            return {}
        return dict(self.refresh.get("constraints") or {})

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "sequence": self.sequence,
            "controller": self.controller,
            "delegate": self.delegate,
            "refresh": self.refresh,
        }

    def to_viewable_dict(self) -> dict:
        """The part of the policy a delegate may see."""
        if self.refresh is False:
            return {"refresh": False}
        refresh: Dict[str, Any] = {}
        if isinstance(self.refresh, dict) and self.refresh.get("constraints"):
            refresh["constraints"] = dict(self.refresh["constraints"])
        return {"refresh": refresh}

    @classmethod
    def from_dict(cls, data: dict) -> "Policy":
        """Create from dictionary."""
        try:
            policy = cls(
                controller=data["controller"],
                delegate=data["delegate"],
                refresh=data.get("refresh", False),
                sequence=data.get("sequence", 0),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Invalid policy: {e}", cause=e)
        if not isinstance(policy.sequence, int) or policy.sequence < 0:
            raise ValidationError('Policy "sequence" must be a non-negative integer.')
        if policy.refresh is not False and not isinstance(policy.refresh, dict):
            raise ValidationError('Policy "refresh" must be false or an object.')
        return policy


class PolicyStoreInterface(ABC):
    """Abstract interface for policy storage backends."""

    @abstractmethod
    async def insert(self, policy: Policy) -> Policy:
        """Insert a new policy; raises DuplicateError if one exists."""
        pass

    @abstractmethod
    async def get(self, controller: str, delegate: str) -> Policy:
        """Get a policy; raises NotFoundError if missing."""
        pass

    @abstractmethod
    async def update(self, policy: Policy) -> Policy:
        """Compare-and-swap on ``sequence``; returns the stored policy."""
        pass

    @abstractmethod
    async def remove(self, controller: str, delegate: str) -> bool:
        """Remove a policy; False if it did not exist."""
        pass

    @abstractmethod
    async def find(self, controller: str, limit: Optional[int] = None) -> List[Policy]:
        """List a controller's policies."""
        pass

    @abstractmethod
    async def count(self, controller: str) -> int:
        """Count a controller's policies."""
        pass


def _not_found(controller: str, delegate: str) -> NotFoundError:
    return NotFoundError(
        f'Policy for controller "{controller}" and delegate "{delegate}" not found.'
    )


def _sequence_conflict(policy: Policy) -> InvalidStateError:
    return InvalidStateError(
        "Could not update policy. Sequence does not match or policy does not exist.",
        details={"sequence": policy.sequence},
    )


class MemoryPolicyStore(PolicyStoreInterface):
    """
    In-memory policy store for testing and single-instance deployments.

    Example:
        >>> store = MemoryPolicyStore()
        >>> await store.insert(Policy(controller="did:key:zP", delegate="did:key:zD",
        ...                           refresh={"constraints": {}}))
        >>> (await store.get("did:key:zP", "did:key:zD")).sequence
        0
    """

    def __init__(self):
        self._policies: Dict[str, Dict[str, Policy]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, policy: Policy) -> Policy:
        async with self._lock:
            policies = self._policies.setdefault(policy.controller, {})
            if policy.delegate in policies:
                raise DuplicateError("Duplicate policy.")
            stored = Policy.from_dict(policy.to_dict())
            policies[policy.delegate] = stored
            logger.info(f"Created policy: {policy.controller} -> {policy.delegate}")
            return Policy.from_dict(stored.to_dict())

    async def get(self, controller: str, delegate: str) -> Policy:
        async with self._lock:
            policy = self._policies.get(controller, {}).get(delegate)
            if policy is None:
                raise _not_found(controller, delegate)
            return Policy.from_dict(policy.to_dict())

    async def update(self, policy: Policy) -> Policy:
        async with self._lock:
            current = self._policies.get(policy.controller, {}).get(policy.delegate)
            if current is None or current.sequence != policy.sequence:
                raise _sequence_conflict(policy)
            stored = Policy.from_dict({**policy.to_dict(), "sequence": policy.sequence + 1})
            self._policies[policy.controller][policy.delegate] = stored
            logger.info(
                f"Updated policy: {policy.controller} -> {policy.delegate} "
                f"(sequence {stored.sequence})"
            )
            return Policy.from_dict(stored.to_dict())

    async def remove(self, controller: str, delegate: str) -> bool:
        async with self._lock:
            policies = self._policies.get(controller, {})
            if delegate in policies:
                del policies[delegate]
                logger.info(f"Removed policy: {controller} -> {delegate}")
                return True
            return False

    async def find(self, controller: str, limit: Optional[int] = None) -> List[Policy]:
        async with self._lock:
            policies = list(self._policies.get(controller, {}).values())
        if limit is not None:
            policies = policies[:limit]
        return [Policy.from_dict(p.to_dict()) for p in policies]

    async def count(self, controller: str) -> int:
        async with self._lock:
            return len(self._policies.get(controller, {}))


# KEYS[1] = controller hash, ARGV = delegate, expected sequence, new policy json
_UPDATE_SCRIPT = """
local current = redis.call('HGET', KEYS[1], ARGV[1])
if not current then
  return -1
end
if tonumber(cjson.decode(current)['sequence']) ~= tonumber(ARGV[2]) then
  return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[3])
return 1
"""


class RedisPolicyStore(PolicyStoreInterface):
    """
    Redis-backed policy store for distributed deployments.

    Each controller's policies live in one hash keyed by delegate; updates
    run as a Lua script so the sequence check and write are atomic.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> store = RedisPolicyStore(client)
    """

    def __init__(self, redis_client, key_prefix: str = "zcapauth:policies:"):
        self._redis = redis_client
        self._prefix = key_prefix

    def _key(self, controller: str) -> str:
        """Generate prefixed key."""
        return f"{self._prefix}{controller}"

    @staticmethod
    def _decode(data: Union[bytes, str]) -> Policy:
        if isinstance(data, bytes):
            data = data.decode()
        return Policy.from_dict(json.loads(data))

    async def insert(self, policy: Policy) -> Policy:
        try:
            created = await self._redis.hsetnx(
                self._key(policy.controller), policy.delegate, json.dumps(policy.to_dict())
            )
        except Exception as e:
            logger.error(f"Redis policy insert error: {e}")
            raise OperationError("Policy storage unavailable.", cause=e)
        if not created:
            raise DuplicateError("Duplicate policy.")
        logger.info(f"Created policy: {policy.controller} -> {policy.delegate}")
        return Policy.from_dict(policy.to_dict())

    async def get(self, controller: str, delegate: str) -> Policy:
        try:
            data = await self._redis.hget(self._key(controller), delegate)
        except Exception as e:
            logger.warning(f"Redis policy get error: {e}")
            raise OperationError("Policy storage unavailable.", cause=e)
        if not data:
            raise _not_found(controller, delegate)
        return self._decode(data)

    async def update(self, policy: Policy) -> Policy:
        stored = Policy.from_dict({**policy.to_dict(), "sequence": policy.sequence + 1})
        try:
            result = await self._redis.eval(
                _UPDATE_SCRIPT,
                1,
                self._key(policy.controller),
                policy.delegate,
                policy.sequence,
                json.dumps(stored.to_dict()),
            )
        except Exception as e:
            logger.error(f"Redis policy update error: {e}")
            raise OperationError("Policy storage unavailable.", cause=e)
        if int(result) != 1:
            raise _sequence_conflict(policy)
        logger.info(
            f"Updated policy: {policy.controller} -> {policy.delegate} "
            f"(sequence {stored.sequence})"
        )
        return stored

    async def remove(self, controller: str, delegate: str) -> bool:
        try:
            deleted = await self._redis.hdel(self._key(controller), delegate)
        except Exception as e:
            logger.warning(f"Redis policy remove error: {e}")
            raise OperationError("Policy storage unavailable.", cause=e)
        if deleted:
            logger.info(f"Removed policy: {controller} -> {delegate}")
        return deleted > 0

    async def find(self, controller: str, limit: Optional[int] = None) -> List[Policy]:
        try:
            values = await self._redis.hvals(self._key(controller))
        except Exception as e:
            logger.warning(f"Redis policy list error: {e}")
            raise OperationError("Policy storage unavailable.", cause=e)
        policies = [self._decode(value) for value in values]
        policies.sort(key=lambda p: p.delegate)
        if limit is not None:
            policies = policies[:limit]
        return policies

    async def count(self, controller: str) -> int:
        try:
            return int(await self._redis.hlen(self._key(controller)))
        except Exception as e:
            logger.warning(f"Redis policy count error: {e}")
            raise OperationError("Policy storage unavailable.", cause=e)
