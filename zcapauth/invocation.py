"""
Capability invocation over HTTP signatures.

A client invokes a capability by signing the request with a key its
controller owns:

    Capability-Invocation: zcap id="urn:zcap:root:...",action="read"
    Authorization: Signature keyId="did:key:z...#z...",
        headers="(key-id) (created) (expires) (request-target) host capability-invocation",
        signature="...",created="1700000000",expires="1700000600"

Delegated capabilities travel in the header itself as
``capability="<base64url(gzip(json))>"``. InvocationAuthorizer verifies all of
it and never lets the reason for a rejection escape beyond what the
underlying error marked public.
"""

import base64
import gzip
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import httpx

from zcapauth.capability import (
    CAPABILITY_INVOCATION,
    Capability,
    get_controllers,
    get_invocation_target,
    get_root_capability_id,
    is_action_allowed,
    is_root_capability_id,
    is_target_within,
    now_ms,
)
from zcapauth.chain import ChainVerifier
from zcapauth.documents import DocumentResolver, RootControllerFn
from zcapauth.errors import (
    DataError,
    NotAllowedError,
    ValidationError,
    wrap_authorization_error,
)
from zcapauth.keys import SignerInterface
from zcapauth.suites import SignatureSuite, decode_signature, encode_signature

logger = logging.getLogger(__name__)

REQUIRED_SIGNED_HEADERS = (
    "(key-id)",
    "(created)",
    "(expires)",
    "(request-target)",
    "host",
    "capability-invocation",
)
REQUIRED_BODY_HEADERS = ("content-type", "digest")
READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
DEFAULT_INVOCATION_TTL = 600

_PARAM_PATTERN = re.compile(r'([A-Za-z-]+)="([^"]*)"')


@dataclass
class ExpectedValues:
    """
    What an invocation must match for the request at hand.

    Attributes:
        host: Expected HTTP Host header.
        root_invocation_target: Target(s) the invoked chain's root must have.
        action: Expected action override (default: derived from the HTTP method).
        target: Expected invocation target (default: ``https://{host}{path}``).
    """

    host: str
    root_invocation_target: Union[str, List[str]]
    action: Optional[str] = None
    target: Optional[str] = None


@dataclass
class InvocationResult:
    """A verified capability invocation."""

    capability: Capability
    controller: str
    action: str
    invocation_target: str
    capability_chain: List[Capability] = field(default_factory=list)
    verification_method: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Header encoding
# =============================================================================


def encode_capability(capability: Capability) -> str:
    """Gzip and base64url-encode a capability for the Capability-Invocation header."""
    data = gzip.compress(json.dumps(capability, separators=(",", ":")).encode("utf-8"))
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode_capability(value: str) -> Capability:
    try:
        data = base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
        capability = json.loads(gzip.decompress(data).decode("utf-8"))
    except (ValueError, OSError, EOFError) as e:
        raise ValidationError("Invalid capability in Capability-Invocation header.", cause=e)
    if not isinstance(capability, dict):
        raise ValidationError("Invalid capability in Capability-Invocation header.")
    return capability


def compute_digest(body: bytes) -> str:
    """RFC 3230 digest of a request body."""
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def parse_auth_params(value: str, scheme: str) -> Dict[str, str]:
    """Parse ``Scheme a="1",b="2"`` into a dict."""
    prefix, _, rest = value.strip().partition(" ")
    if prefix.lower() != scheme.lower() or not rest:
        raise ValidationError(f'Expected "{scheme}" authorization parameters.')
    return dict(_PARAM_PATTERN.findall(rest))


def create_signature_string(
    *,
    method: str,
    request_target: str,
    headers: Mapping[str, str],
    covered: Sequence[str],
    key_id: str,
    created: int,
    expires: int,
) -> str:
    """
    Build the string an HTTP signature covers.

    Args:
        method: HTTP method.
        request_target: Raw path and query, as sent on the wire.
        headers: Request headers with lower-cased names.
        covered: Ordered names of the covered headers / pseudo-headers.
        key_id: Verification method id.
        created: Signature creation time (epoch seconds).
        expires: Signature expiry (epoch seconds).
    """
    lines = []
    for name in covered:
        if name == "(key-id)":
            value = key_id
        elif name == "(created)":
            value = str(created)
        elif name == "(expires)":
            value = str(expires)
        elif name == "(request-target)":
            value = f"{method.lower()} {request_target}"
        else:
            if name not in headers:
                raise ValidationError(f'Signed header "{name}" is missing from the request.')
            value = headers[name].strip()
        lines.append(f"{name}: {value}")
    return "\n".join(lines)


# =============================================================================
# Signing
# =============================================================================


async def sign_capability_invocation(
    *,
    url: str,
    method: str,
    capability: Union[str, Capability],
    invocation_signer: SignerInterface,
    capability_action: str,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[bytes] = None,
    created: Optional[int] = None,
    expires: Optional[int] = None,
) -> Dict[str, str]:
    """
    Sign an HTTP request invoking ``capability``.

    Args:
        url: Absolute request URL.
        method: HTTP method.
        capability: Root capability id, or a delegated capability.
        invocation_signer: Signer for a key the capability's controller owns.
        capability_action: Action being invoked (e.g. "read", "write").
        headers: Extra headers to send (and sign, if content-type).
        body: Raw request body, if any.
        created: Signature time in epoch seconds (default: now).
        expires: Signature expiry in epoch seconds (default: created + 10 minutes).

    Returns:
        Headers to send with the request.
    """
    parsed = httpx.URL(url)
    signed = {k.lower(): v for k, v in (headers or {}).items()}
    signed["host"] = parsed.netloc.decode("ascii")

    if isinstance(capability, str):
        zcap = f'zcap id="{capability}",action="{capability_action}"'
    else:
        zcap = f'zcap capability="{encode_capability(capability)}",action="{capability_action}"'
    signed["capability-invocation"] = zcap

    covered = list(REQUIRED_SIGNED_HEADERS)
    if body is not None:
        signed.setdefault("content-type", "application/json")
        signed["digest"] = compute_digest(body)
        covered.extend(REQUIRED_BODY_HEADERS)

    created = int(time.time()) if created is None else created
    expires = created + DEFAULT_INVOCATION_TTL if expires is None else expires
    signature_string = create_signature_string(
        method=method,
        request_target=parsed.raw_path.decode("ascii"),
        headers=signed,
        covered=covered,
        key_id=invocation_signer.id,
        created=created,
        expires=expires,
    )
    signature = await invocation_signer.sign(signature_string.encode("utf-8"))
    signed["authorization"] = (
        f'Signature keyId="{invocation_signer.id}",headers="{" ".join(covered)}",'
        f'signature="{encode_signature(signature)}",created="{created}",expires="{expires}"'
    )
    return signed


# =============================================================================
# Verification
# =============================================================================


class InvocationAuthorizer:
    """
    Verifies HTTP capability invocations.

    Example:
        >>> authorizer = InvocationAuthorizer(resolver, suite, chain_verifier)
        >>> result = await authorizer.authorize(
        ...     method="GET", request_target="/profiles/p/zcaps/policies",
        ...     headers=headers, body=None,
        ...     expected=ExpectedValues(host="example.com", root_invocation_target=root),
        ...     get_root_controller=lambda root_id, target: "p",
        ... )
    """

    def __init__(
        self,
        resolver: DocumentResolver,
        suite: SignatureSuite,
        chain_verifier: ChainVerifier,
        max_clock_skew: int = 300,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Args:
            resolver: Base document resolver.
            suite: Suite verifying HTTP signatures.
            chain_verifier: Verifier for delegated capability chains.
            max_clock_skew: Tolerated clock skew in seconds.
            clock: Current time in epoch ms; injectable for tests.
        """
        self._resolver = resolver
        self._suite = suite
        self._chain_verifier = chain_verifier
        self.max_clock_skew = max_clock_skew
        self._clock = clock or now_ms

    async def authorize(
        self,
        *,
        method: str,
        request_target: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        expected: ExpectedValues,
        get_root_controller: RootControllerFn,
    ) -> InvocationResult:
        """
        Verify a capability invocation.

        Raises:
            NotAllowedError: On any failure, wrapping the underlying error.
        """
        try:
            return await self._authorize(
                method=method.upper(),
                request_target=request_target,
                headers={k.lower(): v for k, v in headers.items()},
                body=body,
                expected=expected,
                get_root_controller=get_root_controller,
            )
        except Exception as e:
            logger.debug(f"Capability invocation rejected: {e!r}")
            raise wrap_authorization_error(e)

    async def _authorize(
        self,
        *,
        method: str,
        request_target: str,
        headers: Dict[str, str],
        body: Optional[bytes],
        expected: ExpectedValues,
        get_root_controller: RootControllerFn,
    ) -> InvocationResult:
        if "authorization" not in headers:
            raise NotAllowedError("Missing HTTP signature.", public=True)
        if "capability-invocation" not in headers:
            raise NotAllowedError('Missing "Capability-Invocation" header.', public=True)

        params = parse_auth_params(headers["authorization"], "Signature")
        for name in ("keyId", "headers", "signature", "created", "expires"):
            if not params.get(name):
                raise ValidationError(f'HTTP signature is missing "{name}".')
        covered = params["headers"].split()
        required = list(REQUIRED_SIGNED_HEADERS)
        if body:
            required.extend(REQUIRED_BODY_HEADERS)
        missing = [name for name in required if name not in covered]
        if missing:
            raise ValidationError(f"HTTP signature does not cover: {', '.join(missing)}.")

        # timestamps
        try:
            created = int(params["created"])
            expires = int(params["expires"])
        except ValueError as e:
            raise ValidationError("HTTP signature timestamps must be integers.", cause=e)
        now = self._clock() / 1000
        if abs(now - created) > self.max_clock_skew:
            raise NotAllowedError("HTTP signature creation time is out of range.", public=True)
        if expires < now - self.max_clock_skew:
            raise NotAllowedError("HTTP signature has expired.", public=True)

        if body and headers.get("digest") != compute_digest(body):
            raise DataError("Request body does not match its digest.", public=True)

        if headers.get("host") != expected.host:
            raise NotAllowedError(f'Unexpected host "{headers.get("host")}".', public=True)

        resolver = self._resolver.with_root_controller(get_root_controller)

        # signature
        key_id = params["keyId"]
        method_doc = await resolver.get_verification_method(key_id, CAPABILITY_INVOCATION)
        signature_string = create_signature_string(
            method=method, request_target=request_target, headers=headers,
            covered=covered, key_id=key_id, created=created, expires=expires,
        )
        if not await self._suite.verify_bytes(
            signature_string.encode("utf-8"),
            decode_signature(params["signature"]),
            verification_method=method_doc,
        ):
            raise DataError("HTTP signature does not verify.")
        invoker = method_doc["controller"]

        # invoked capability and action
        zcap = parse_auth_params(headers["capability-invocation"], "zcap")
        action = zcap.get("action")
        expected_action = expected.action or ("read" if method in READ_METHODS else "write")
        if action != expected_action:
            raise NotAllowedError(
                f'Invoked action "{action}" does not match expected action "{expected_action}".',
                public=True,
            )

        roots = expected.root_invocation_target
        root_ids = [get_root_capability_id(t) for t in ([roots] if isinstance(roots, str) else roots)]
        if "capability" in zcap:
            capability = decode_capability(zcap["capability"])
            details = await self._chain_verifier.verify_delegation(
                capability,
                expected_root_capability=root_ids,
                resolver=resolver,
                allow_target_attenuation=True,
                date=self._clock(),
            )
            chain = details.capability_chain
        elif "id" in zcap:
            if not is_root_capability_id(zcap["id"]):
                raise ValidationError("Only root capabilities may be invoked by id.")
            if zcap["id"] not in root_ids:
                raise NotAllowedError("Invoked root capability is not the expected root.", public=True)
            capability = await resolver.load(zcap["id"])
            chain = [capability]
        else:
            raise ValidationError('"Capability-Invocation" names no capability.')

        if not is_action_allowed(capability, action):
            raise NotAllowedError(f'Action "{action}" is not allowed by the capability.', public=True)

        invocation_target = get_invocation_target(capability)
        expected_target = expected.target or f"https://{expected.host}{request_target}"
        if not is_target_within(expected_target, invocation_target):
            raise NotAllowedError(
                "The request URL is not within the capability's invocation target.", public=True
            )

        if invoker not in get_controllers(capability):
            raise NotAllowedError(
                f'"{invoker}" is not a controller of the invoked capability.', public=True
            )

        return InvocationResult(
            capability=capability,
            controller=invoker,
            action=action,
            invocation_target=invocation_target,
            capability_chain=chain,
            verification_method=method_doc,
        )
