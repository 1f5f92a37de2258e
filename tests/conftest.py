"""
Shared pytest fixtures for zcapauth tests.
"""

import pytest

from zcapauth import (
    AuthorizationContext,
    DidKeyStrategy,
    DocumentResolver,
    Ed25519Suite,
    KeyPair,
    MemoryPolicyStore,
    StaticDocumentStrategy,
    generate_identity,
)
from zcapauth.capability import create_root_capability, now_ms
from zcapauth.chain import ChainVerifier
from zcapauth.config import get_profile_path
from zcapauth.keys import SignerInterface

HOST = "profiles.example"
BASE_URI = f"https://{HOST}"
BASE_PATH = "/profiles"
HOUR = 60 * 60 * 1000
YEAR = 365 * 24 * HOUR


class FakeClock:
    """Settable epoch-ms clock."""

    def __init__(self, now: int = None):
        self.now = now_ms() if now is None else now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class CountingSigner(SignerInterface):
    """Wraps a signer and counts signatures."""

    def __init__(self, signer: SignerInterface):
        self._signer = signer
        self.id = signer.id
        self.controller = signer.controller
        self.calls = 0

    async def sign(self, data: bytes) -> bytes:
        self.calls += 1
        return await self._signer.sign(data)


@pytest.fixture
def profile() -> KeyPair:
    """The profile (root authority)."""
    return generate_identity()


@pytest.fixture
def delegate() -> KeyPair:
    """An agent the profile delegates to."""
    return generate_identity()


@pytest.fixture
def suite() -> Ed25519Suite:
    return Ed25519Suite()


@pytest.fixture
def resolver() -> DocumentResolver:
    return DocumentResolver([StaticDocumentStrategy(), DidKeyStrategy()])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def profile_target(profile: KeyPair) -> str:
    """Root invocation target of the profile."""
    return get_profile_path(profile.did, BASE_URI, BASE_PATH)


@pytest.fixture
def root_capability(profile: KeyPair, profile_target: str) -> dict:
    return create_root_capability(controller=profile.did, invocation_target=profile_target)


@pytest.fixture
def chain_verifier(resolver, suite, clock) -> ChainVerifier:
    return ChainVerifier(resolver, suite, clock=clock)


@pytest.fixture
def profile_signer(profile: KeyPair) -> CountingSigner:
    return CountingSigner(profile.signer())


@pytest.fixture
def policy_store() -> MemoryPolicyStore:
    return MemoryPolicyStore()


@pytest.fixture
def context(resolver, suite, policy_store, profile, profile_signer) -> AuthorizationContext:
    """Context for HTTP tests (real clock: HTTP signatures use wall time)."""
    return AuthorizationContext.create(
        resolver=resolver,
        suite=suite,
        policy_store=policy_store,
        profile_signers={profile.did: profile_signer},
        host=HOST,
        base_uri=BASE_URI,
        base_path=BASE_PATH,
    )
