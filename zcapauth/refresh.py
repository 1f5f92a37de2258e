"""
Policy-governed capability refresh.

A delegate holding a capability delegated directly by a profile can ask the
profile's service to re-issue it with a later expiry. RefreshEngine decides
whether the profile's policy allows that and, if so, signs the replacement on
the profile's behalf. RefreshedZcapCache puts a single-flight cache in front
of it so identical concurrent requests cost one signature.
"""

import asyncio
import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from zcapauth.cache import LruCache
from zcapauth.capability import (
    CAPABILITY_DELEGATION,
    Capability,
    canonicalize,
    format_timestamp,
    get_capability_chain,
    new_capability_id,
    now_ms,
    parse_timestamp,
)
from zcapauth.errors import (
    ConstraintError,
    NotAllowedError,
    NotFoundError,
    OperationError,
    ValidationError,
)
from zcapauth.keys import SignerInterface
from zcapauth.policies import Policy, PolicyStoreInterface
from zcapauth.suites import SignatureSuite

logger = logging.getLogger(__name__)

# fields carried over unchanged into a refreshed capability
_REFRESHED_FIELDS = ("@context", "controller", "parentCapability", "invocationTarget", "allowedAction")


class ProfileSignerProvider(ABC):
    """Looks up a signer empowered to delegate on a profile's behalf."""

    @abstractmethod
    async def get_signer(self, profile_id: str) -> SignerInterface:
        pass


class StaticProfileSignerProvider(ProfileSignerProvider):
    """Signers registered up front, keyed by profile id."""

    def __init__(self, signers: Optional[Dict[str, SignerInterface]] = None):
        self._signers: Dict[str, SignerInterface] = dict(signers or {})

    def add(self, profile_id: str, signer: SignerInterface) -> None:
        self._signers[profile_id] = signer

    async def get_signer(self, profile_id: str) -> SignerInterface:
        signer = self._signers.get(profile_id)
        if signer is None:
            raise NotFoundError(f'No signer for profile "{profile_id}".')
        return signer


class RefreshEngine:
    """
    Evaluates refresh policies and re-signs capabilities.

    Example:
        >>> engine = RefreshEngine(store, Ed25519Suite(), signers)
        >>> refreshed = await engine.refresh(profile_id, zcap)
    """

    def __init__(
        self,
        policy_store: PolicyStoreInterface,
        suite: SignatureSuite,
        signer_provider: ProfileSignerProvider,
        max_clock_skew: int = 300,
        max_delegation_ttl: int = 365 * 24 * 60 * 60 * 1000,
        default_delegation_ttl: Optional[int] = None,
        signing_timeout: Optional[float] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Args:
            policy_store: Where refresh policies live.
            suite: Suite producing the new delegation proof.
            signer_provider: Source of profile signers.
            max_clock_skew: Tolerated clock skew in seconds.
            max_delegation_ttl: Global ceiling for refreshed lifetimes, in ms.
            default_delegation_ttl: Lifetime when the policy sets none, in ms.
            signing_timeout: Seconds allowed for resolving the signer and signing.
            clock: Current time in epoch ms; injectable for tests.
        """
        self._policy_store = policy_store
        self._suite = suite
        self._signer_provider = signer_provider
        self.max_clock_skew = max_clock_skew
        self.max_delegation_ttl = max_delegation_ttl
        self.default_delegation_ttl = (
            max_delegation_ttl if default_delegation_ttl is None else default_delegation_ttl
        )
        self.signing_timeout = signing_timeout
        self._clock = clock or now_ms

    async def get_refresh_policy(self, profile_id: str, delegate_id: str) -> Policy:
        """
        Get the policy for a delegate, denying refresh when there is none.

        Raises:
            NotAllowedError: If no policy exists.
        """
        try:
            return await self._policy_store.get(profile_id, delegate_id)
        except NotFoundError as e:
            raise NotAllowedError(
                f'No refresh policy specified for profile "{profile_id}" and '
                f'delegate "{delegate_id}".',
                public=True,
                cause=e,
            )

    async def refresh(self, profile_id: str, capability: Capability) -> Capability:
        """
        Re-issue ``capability`` with a later expiry.

        ``capability`` must already have passed
        ``ChainVerifier.verify_refreshable_delegation`` for ``profile_id``.

        Raises:
            NotAllowedError: If no policy allows the refresh.
            ConstraintError: If it is too early to refresh.
            OperationError: If signing fails.
        """
        delegate_id = capability.get("controller")
        if not isinstance(delegate_id, str):
            raise ValidationError('A refreshable capability must have a single "controller".')

        policy = await self.get_refresh_policy(profile_id, delegate_id)
        if policy.refresh is False:
            raise NotAllowedError(
                f'Refresh policy for delegate "{delegate_id}" does not allow refresh.',
                public=True,
            )

        now = self._clock()
        constraints = policy.constraints
        max_ttl_before_refresh = constraints.get("maxTtlBeforeRefresh")
        if isinstance(max_ttl_before_refresh, int) and not isinstance(max_ttl_before_refresh, bool):
            expires = parse_timestamp(capability.get("expires"))
            refresh_time = expires - self.max_clock_skew * 1000 - max_ttl_before_refresh
            if now < refresh_time:
                raise ConstraintError(
                    "Refresh policy constraint violation; too early to refresh.",
                    details={"refreshTime": refresh_time},
                )

        ttl = constraints.get("maxDelegationTtl")
        if ttl is None:
            ttl = self.default_delegation_ttl
        ttl = min(ttl, self.max_delegation_ttl)

        try:
            refreshed = await asyncio.wait_for(
                self._sign(profile_id, capability, now=now, expires=now + ttl),
                timeout=self.signing_timeout,
            )
        except asyncio.TimeoutError as e:
            raise OperationError("Timed out refreshing capability.", cause=e)
        except Exception as e:
            logger.warning(f"Refreshing capability for {profile_id} failed: {e!r}")
            raise OperationError("Could not refresh capability.", cause=e)

        logger.info(
            f"Refreshed capability {capability.get('id')} for delegate {delegate_id} "
            f"as {refreshed['id']} (expires {refreshed['expires']})"
        )
        return refreshed

    async def _sign(
        self, profile_id: str, capability: Capability, *, now: int, expires: int
    ) -> Capability:
        signer = await self._signer_provider.get_signer(profile_id)
        document = {key: capability[key] for key in _REFRESHED_FIELDS if key in capability}
        document["id"] = new_capability_id()
        document["expires"] = format_timestamp(expires)
        proof = await self._suite.sign(
            document,
            signer=signer,
            proof_purpose=CAPABILITY_DELEGATION,
            capability_chain=get_capability_chain(capability),
            created=format_timestamp(now),
        )
        return {**document, "proof": proof}


def create_cache_key(profile_id: str, capability: Capability) -> str:
    """Content hash identifying a refresh request."""
    data = canonicalize({"profileId": profile_id, "canonicalZcap": canonicalize(capability)})
    digest = hashlib.sha256(data.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class RefreshedZcapCache:
    """
    Single-flight cache over RefreshEngine.

    No entry is invalidated when a policy changes: a refreshed capability
    stays cached for at most ``ttl`` seconds afterwards.
    """

    def __init__(
        self,
        engine: RefreshEngine,
        max_size: int = 100,
        ttl: float = 300,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._engine = engine
        self._cache = LruCache(max_size=max_size, ttl=ttl, clock=clock)

    @property
    def cache(self) -> LruCache:
        return self._cache

    async def get_refreshed_zcap(self, profile_id: str, capability: Capability) -> Capability:
        key = create_cache_key(profile_id, capability)
        return await self._cache.memoize(key, lambda: self._engine.refresh(profile_id, capability))
