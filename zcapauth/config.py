# zcapauth/config.py
"""
Centralized configuration for zcapauth.

All configurable values are read from environment variables with sensible defaults.
This allows different environments (dev, staging, production) to use different
settings without code changes. The values here are only defaults: the running
service reads them once into an AuthorizationContext.

Environment Variables:
    ZCAP_HOST: Expected HTTP Host of invocations (default: localhost:18443)
    ZCAP_BASE_URI: Public base URI of the service (default: https://{ZCAP_HOST})
    ZCAP_BASE_PATH: Route prefix for profiles (default: /profiles)
    ZCAP_MAX_CHAIN_LENGTH: Maximum capability chain length (default: 10)
    ZCAP_MAX_CLOCK_SKEW: Tolerated clock skew in seconds (default: 300)
    ZCAP_MAX_DELEGATION_TTL: Ceiling for delegated zcap lifetimes in ms (default: 1 year)
    ZCAP_DEFAULT_DELEGATION_TTL: Lifetime of refreshed zcaps in ms (default: the ceiling)
    ZCAP_POLICY_LIMIT: Maximum policies per profile, -1 for unlimited (default: -1)
    ZCAP_POLICY_LIST_LIMIT: Maximum policies returned by a listing (default: 100)
    ZCAP_REFRESH_CACHE_TTL: Refreshed zcap cache TTL in seconds (default: 300)
    ZCAP_REFRESH_CACHE_SIZE: Refreshed zcap cache entries (default: 100)
    ZCAP_PROFILE_SIGNERS: JSON file mapping profile ids to private JWKs (serve only)
"""

import os
from typing import Final, Optional

from zcapauth.capability import encode_uri_component

# =============================================================================
# HTTP Configuration
# =============================================================================

HOST: Final[str] = os.getenv("ZCAP_HOST", "localhost:18443")

BASE_URI: Final[str] = os.getenv("ZCAP_BASE_URI", f"https://{HOST}")

# Profiles live under {BASE_PATH}/{profileId}
BASE_PATH: Final[str] = os.getenv("ZCAP_BASE_PATH", "/profiles")

# =============================================================================
# Authorization Configuration
# =============================================================================

MAX_CHAIN_LENGTH: Final[int] = int(os.getenv("ZCAP_MAX_CHAIN_LENGTH", "10"))

# seconds
MAX_CLOCK_SKEW: Final[int] = int(os.getenv("ZCAP_MAX_CLOCK_SKEW", "300"))

# milliseconds
MAX_DELEGATION_TTL: Final[int] = int(
    os.getenv("ZCAP_MAX_DELEGATION_TTL", str(365 * 24 * 60 * 60 * 1000))
)

DEFAULT_DELEGATION_TTL: Final[int] = int(
    os.getenv("ZCAP_DEFAULT_DELEGATION_TTL", str(MAX_DELEGATION_TTL))
)

# =============================================================================
# Policy Limits
# =============================================================================

POLICY_LIMIT: Final[int] = int(os.getenv("ZCAP_POLICY_LIMIT", "-1"))

POLICY_LIST_LIMIT: Final[int] = int(os.getenv("ZCAP_POLICY_LIST_LIMIT", "100"))

# =============================================================================
# Refreshed Zcap Cache
# =============================================================================

REFRESH_CACHE_TTL: Final[int] = int(os.getenv("ZCAP_REFRESH_CACHE_TTL", "300"))

REFRESH_CACHE_SIZE: Final[int] = int(os.getenv("ZCAP_REFRESH_CACHE_SIZE", "100"))

PROFILE_SIGNERS_FILE: Final[Optional[str]] = os.getenv("ZCAP_PROFILE_SIGNERS")


# =============================================================================
# Helper Functions
# =============================================================================


def get_profile_path(profile_id: str, base_uri: str = BASE_URI, base_path: str = BASE_PATH) -> str:
    """
    Build the root invocation target for a profile.

    Args:
        profile_id: The profile identifier (usually a DID).
        base_uri: Public base URI of the service.
        base_path: Route prefix for profiles.

    Returns:
        Absolute URL, e.g. "https://localhost:18443/profiles/did%3Akey%3Az6Mk..."
    """
    return f"{base_uri.rstrip('/')}{base_path}/{encode_uri_component(profile_id)}"


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================


def print_config() -> None:
    """Print current configuration (useful for debugging)."""
    print("zcapauth configuration:")
    print(f"  HOST:                   {HOST}")
    print(f"  BASE_URI:               {BASE_URI}")
    print(f"  BASE_PATH:              {BASE_PATH}")
    print(f"  MAX_CHAIN_LENGTH:       {MAX_CHAIN_LENGTH}")
    print(f"  MAX_CLOCK_SKEW:         {MAX_CLOCK_SKEW}s")
    print(f"  MAX_DELEGATION_TTL:     {MAX_DELEGATION_TTL}ms")
    print(f"  DEFAULT_DELEGATION_TTL: {DEFAULT_DELEGATION_TTL}ms")
    print(f"  POLICY_LIMIT:           {POLICY_LIMIT}")
    print(f"  REFRESH_CACHE_TTL:      {REFRESH_CACHE_TTL}s")
    print(f"  REFRESH_CACHE_SIZE:     {REFRESH_CACHE_SIZE}")


if __name__ == "__main__":
    print_config()
