"""
AuthorizationContext: everything the authorization and refresh components
share, built once at startup and passed to them explicitly.

Usage:
    context = AuthorizationContext.create(
        host="profiles.example", profile_signers={profile_id: signer}
    )
    app = create_app(context)
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from zcapauth import config
from zcapauth.capability import now_ms
from zcapauth.chain import ChainVerifier
from zcapauth.documents import (
    DidKeyStrategy,
    DidWebStrategy,
    DocumentResolver,
    StaticDocumentStrategy,
)
from zcapauth.invocation import InvocationAuthorizer
from zcapauth.keys import SignerInterface, load_signers
from zcapauth.policies import MemoryPolicyStore, PolicyStoreInterface
from zcapauth.refresh import (
    ProfileSignerProvider,
    RefreshedZcapCache,
    RefreshEngine,
    StaticProfileSignerProvider,
)
from zcapauth.suites import Ed25519Suite, SignatureSuite

logger = logging.getLogger(__name__)


def default_resolver(documents: Optional[StaticDocumentStrategy] = None) -> DocumentResolver:
    """Static documents first, then ``did:key`` and ``did:web``."""
    return DocumentResolver([documents or StaticDocumentStrategy(), DidKeyStrategy(), DidWebStrategy()])


@dataclass
class AuthorizationContext:
    """
    Shared collaborators and limits.

    Attributes:
        resolver: Base document resolver.
        suite: Signature suite for delegation proofs and HTTP signatures.
        policy_store: Refresh policy storage.
        signer_provider: Source of profile signers for refresh.
        host: Expected HTTP Host of invocations.
        base_uri: Public base URI of the service.
        base_path: Route prefix for profiles.
        max_chain_length: Maximum capability chain length.
        max_clock_skew: Tolerated clock skew in seconds.
        max_delegation_ttl: Ceiling for delegated lifetimes in ms.
        default_delegation_ttl: Lifetime of refreshed capabilities in ms.
        policy_limit: Maximum policies per profile (-1 for unlimited).
        policy_list_limit: Maximum policies returned by a listing.
        refresh_cache_size: Refreshed capability cache entries.
        refresh_cache_ttl: Refreshed capability cache TTL in seconds.
        signing_timeout: Seconds allowed for a refresh signature (None to wait).
        clock: Current time in epoch ms.
    """

    resolver: DocumentResolver
    suite: SignatureSuite
    policy_store: PolicyStoreInterface
    signer_provider: ProfileSignerProvider
    host: str = config.HOST
    base_uri: str = config.BASE_URI
    base_path: str = config.BASE_PATH
    max_chain_length: int = config.MAX_CHAIN_LENGTH
    max_clock_skew: int = config.MAX_CLOCK_SKEW
    max_delegation_ttl: int = config.MAX_DELEGATION_TTL
    default_delegation_ttl: int = config.DEFAULT_DELEGATION_TTL
    policy_limit: int = config.POLICY_LIMIT
    policy_list_limit: int = config.POLICY_LIST_LIMIT
    refresh_cache_size: int = config.REFRESH_CACHE_SIZE
    refresh_cache_ttl: float = config.REFRESH_CACHE_TTL
    signing_timeout: Optional[float] = None
    clock: Callable[[], int] = field(default=now_ms)

    def __post_init__(self):
        self.chain_verifier = ChainVerifier(
            self.resolver,
            self.suite,
            max_chain_length=self.max_chain_length,
            max_clock_skew=self.max_clock_skew,
            max_delegation_ttl=self.max_delegation_ttl,
            clock=self.clock,
        )
        self.invocation_authorizer = InvocationAuthorizer(
            self.resolver,
            self.suite,
            self.chain_verifier,
            max_clock_skew=self.max_clock_skew,
            clock=self.clock,
        )
        self.refresh_engine = RefreshEngine(
            self.policy_store,
            self.suite,
            self.signer_provider,
            max_clock_skew=self.max_clock_skew,
            max_delegation_ttl=self.max_delegation_ttl,
            default_delegation_ttl=self.default_delegation_ttl,
            signing_timeout=self.signing_timeout,
            clock=self.clock,
        )
        self.refreshed_zcap_cache = RefreshedZcapCache(
            self.refresh_engine, max_size=self.refresh_cache_size, ttl=self.refresh_cache_ttl
        )

    @classmethod
    def create(
        cls,
        *,
        resolver: Optional[DocumentResolver] = None,
        suite: Optional[SignatureSuite] = None,
        policy_store: Optional[PolicyStoreInterface] = None,
        profile_signers: Optional[Dict[str, SignerInterface]] = None,
        signer_provider: Optional[ProfileSignerProvider] = None,
        **options,
    ) -> "AuthorizationContext":
        """
        Build a context, filling in in-memory defaults for anything omitted.

        Args:
            resolver: Document resolver (default: static + did:key + did:web).
            suite: Signature suite (default: Ed25519Suite).
            policy_store: Policy store (default: MemoryPolicyStore).
            profile_signers: Profile id to signer, used when no provider is given.
            signer_provider: Source of profile signers.
            **options: Any other AuthorizationContext field.
        """
        return cls(
            resolver=resolver or default_resolver(),
            suite=suite or Ed25519Suite(),
            policy_store=policy_store or MemoryPolicyStore(),
            signer_provider=signer_provider or StaticProfileSignerProvider(profile_signers),
            **options,
        )

    @classmethod
    def from_env(cls, **overrides) -> "AuthorizationContext":
        """Build a context from ``ZCAP_*`` environment configuration."""
        signers: Dict[str, SignerInterface] = {}
        if config.PROFILE_SIGNERS_FILE:
            signers = load_signers(config.PROFILE_SIGNERS_FILE)
        else:
            logger.warning("ZCAP_PROFILE_SIGNERS not set; capability refresh will fail.")
        overrides.setdefault("profile_signers", signers)
        return cls.create(**overrides)
