"""
zcapauth - capability (zcap) authorization and refresh for multi-tenant profiles.

Verifies HTTP capability invocations and delegation chains, and re-issues
delegated capabilities under per-delegate refresh policies.
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    ZcapError,
    ValidationError,
    DataError,
    ConstraintError,
    NotAllowedError,
    NotFoundError,
    DuplicateError,
    InvalidStateError,
    OperationError,
    wrap_authorization_error,
)

# Capabilities and keys
from .capability import create_root_capability, get_root_capability_id
from .keys import generate_identity, KeyPair, Ed25519Signer, SignerInterface
from .suites import SignatureSuite, Ed25519Suite

# Authorization
from .documents import DocumentResolver, DidKeyStrategy, DidWebStrategy, StaticDocumentStrategy
from .chain import ChainVerifier, delegate_capability
from .invocation import InvocationAuthorizer, ExpectedValues, InvocationResult, sign_capability_invocation

# Policies and refresh
from .policies import Policy, MemoryPolicyStore
from .refresh import RefreshEngine, RefreshedZcapCache, StaticProfileSignerProvider
from .context import AuthorizationContext


# HTTP surfaces (lazy imports to avoid loading FastAPI unless needed)
def __getattr__(name):
    """Lazy loading of the HTTP server and client."""
    if name == "create_app":
        from .server import create_app

        return create_app
    elif name == "ZcapClient":
        from .client import ZcapClient

        return ZcapClient
    elif name == "RedisPolicyStore":
        from .policies import RedisPolicyStore

        return RedisPolicyStore
    raise AttributeError(f"module 'zcapauth' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Errors
    "ZcapError",
    "ValidationError",
    "DataError",
    "ConstraintError",
    "NotAllowedError",
    "NotFoundError",
    "DuplicateError",
    "InvalidStateError",
    "OperationError",
    "wrap_authorization_error",
    # Capabilities and keys
    "create_root_capability",
    "get_root_capability_id",
    "generate_identity",
    "KeyPair",
    "Ed25519Signer",
    "SignerInterface",
    "SignatureSuite",
    "Ed25519Suite",
    # Authorization
    "DocumentResolver",
    "DidKeyStrategy",
    "DidWebStrategy",
    "StaticDocumentStrategy",
    "ChainVerifier",
    "delegate_capability",
    "InvocationAuthorizer",
    "ExpectedValues",
    "InvocationResult",
    "sign_capability_invocation",
    # Policies and refresh
    "Policy",
    "MemoryPolicyStore",
    "RedisPolicyStore",
    "RefreshEngine",
    "RefreshedZcapCache",
    "StaticProfileSignerProvider",
    "AuthorizationContext",
    # HTTP (lazy loaded)
    "create_app",
    "ZcapClient",
]
