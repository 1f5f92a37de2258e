"""
zcapauth client.

Signs HTTP requests with capability invocations and delegates capabilities.

Example:
    ```python
    from zcapauth.client import ZcapClient
    from zcapauth.keys import generate_identity

    profile = generate_identity()
    client = ZcapClient(invocation_signer=profile.signer(), base_uri="https://localhost:18443")

    policy = await client.create_policy(profile.did, {
        "sequence": 0, "controller": profile.did, "delegate": delegate_did,
        "refresh": {"constraints": {"maxTtlBeforeRefresh": 0}},
    })
    ```
"""

from __future__ import annotations

import json as jsonlib
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from zcapauth import config, errors
from zcapauth.capability import (
    Capability,
    create_root_capability,
    encode_uri_component,
    get_root_capability_id,
)
from zcapauth.chain import delegate_capability
from zcapauth.invocation import READ_METHODS, sign_capability_invocation
from zcapauth.keys import SignerInterface
from zcapauth.suites import Ed25519Suite, SignatureSuite

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0  # seconds


def error_from_response(response: httpx.Response) -> errors.ZcapError:
    """Rebuild the service's error from an error response."""
    try:
        data = response.json()
    except ValueError:
        data = {}
    name = data.get("name") if isinstance(data, dict) else None
    message = (data.get("message") if isinstance(data, dict) else None) or response.text
    error_class = getattr(errors, name, None) if name else None
    if not (isinstance(error_class, type) and issubclass(error_class, errors.ZcapError)):
        error_class = errors.OperationError
    details = data.get("details", {}) if isinstance(data, dict) else {}
    error = error_class(message or f"HTTP {response.status_code}", details=details, public=True)
    error.http_status = response.status_code
    error.response = response
    return error


class ZcapClient:
    """
    Asynchronous client for zcap-protected HTTP APIs.

    Args:
        invocation_signer: Signer for capability invocations.
        delegation_signer: Signer for delegations (default: the invocation signer).
        suite: Signature suite for delegation proofs (default: Ed25519Suite).
        base_uri: Base URI of a zcapauth service, for the policy helpers.
        base_path: Profile route prefix of that service.
        http_client: httpx client to reuse (default: one owned by this client).
        timeout: Request timeout in seconds when creating the httpx client.
    """

    def __init__(
        self,
        invocation_signer: SignerInterface,
        delegation_signer: Optional[SignerInterface] = None,
        suite: Optional[SignatureSuite] = None,
        base_uri: str = config.BASE_URI,
        base_path: str = config.BASE_PATH,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.invocation_signer = invocation_signer
        self.delegation_signer = delegation_signer or invocation_signer
        self.suite = suite or Ed25519Suite()
        self.base_uri = base_uri.rstrip("/")
        self.base_path = base_path
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    # =========================================================================
    # Invocation
    # =========================================================================

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        capability: Optional[Union[str, Capability]] = None,
        action: Optional[str] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send a request invoking ``capability``.

        Args:
            url: Absolute request URL.
            method: HTTP method.
            capability: Capability (or root capability id) to invoke; defaults
                to the root capability of ``url``.
            action: Action to invoke (default: read for GET/HEAD/OPTIONS, else write).
            json: JSON body.
            headers: Extra headers.

        Raises:
            ZcapError: The service's error for non-2xx responses.
        """
        method = method.upper()
        if capability is None:
            capability = get_root_capability_id(url)
        if action is None:
            action = "read" if method in READ_METHODS else "write"

        body = None
        if json is not None:
            body = jsonlib.dumps(json, separators=(",", ":")).encode("utf-8")
        signed = await sign_capability_invocation(
            url=url,
            method=method,
            capability=capability,
            invocation_signer=self.invocation_signer,
            capability_action=action,
            headers={"accept": "application/json", **(headers or {})},
            body=body,
        )

        response = await self._client.request(method, url, headers=signed, content=body)
        if response.is_error:
            raise error_from_response(response)
        return response

    async def read(self, url: str, capability: Optional[Union[str, Capability]] = None) -> Any:
        response = await self.request(url, method="GET", capability=capability)
        return response.json()

    async def write(
        self, url: str, json: Any, capability: Optional[Union[str, Capability]] = None
    ) -> Any:
        response = await self.request(url, method="POST", capability=capability, json=json)
        return response.json()

    # =========================================================================
    # Delegation
    # =========================================================================

    async def delegate(
        self,
        *,
        controller: Union[str, List[str]],
        expires: int,
        capability: Optional[Capability] = None,
        invocation_target: Optional[str] = None,
        allowed_action: Optional[Union[str, List[str]]] = None,
    ) -> Capability:
        """
        Delegate ``capability`` (default: the root capability of
        ``invocation_target``, controlled by the delegation signer) to ``controller``.

        Args:
            controller: The delegate.
            expires: Expiry in epoch ms.
            capability: Parent capability.
            invocation_target: Target of the new capability.
            allowed_action: Allowed action(s).
        """
        if capability is None:
            if not invocation_target:
                raise ValueError("invocation_target is required to delegate a root capability")
            capability = create_root_capability(
                controller=self.delegation_signer.controller, invocation_target=invocation_target
            )
        return await delegate_capability(
            capability,
            controller=controller,
            signer=self.delegation_signer,
            suite=self.suite,
            expires=expires,
            invocation_target=invocation_target,
            allowed_action=allowed_action,
        )

    # =========================================================================
    # zcapauth service helpers
    # =========================================================================

    def profile_url(self, profile_id: str) -> str:
        return config.get_profile_path(profile_id, self.base_uri, self.base_path)

    def policies_url(self, profile_id: str, delegate_id: Optional[str] = None) -> str:
        url = f"{self.profile_url(profile_id)}/zcaps/policies"
        if delegate_id is not None:
            url += f"/{encode_uri_component(delegate_id)}"
        return url

    def _root(self, profile_id: str, capability: Optional[Union[str, Capability]]):
        return capability or get_root_capability_id(self.profile_url(profile_id))

    async def create_policy(
        self, profile_id: str, policy: Dict[str, Any], capability=None
    ) -> Dict[str, Any]:
        data = await self.write(
            self.policies_url(profile_id), {"policy": policy}, self._root(profile_id, capability)
        )
        return data["policy"]

    async def get_policies(self, profile_id: str, capability=None) -> List[Dict[str, Any]]:
        data = await self.read(self.policies_url(profile_id), self._root(profile_id, capability))
        return [result["policy"] for result in data["results"]]

    async def get_policy(self, profile_id: str, delegate_id: str, capability=None) -> Dict[str, Any]:
        data = await self.read(
            self.policies_url(profile_id, delegate_id), self._root(profile_id, capability)
        )
        return data["policy"]

    async def update_policy(
        self, profile_id: str, policy: Dict[str, Any], capability=None
    ) -> Dict[str, Any]:
        data = await self.write(
            self.policies_url(profile_id, policy["delegate"]),
            {"policy": policy},
            self._root(profile_id, capability),
        )
        return data["policy"]

    async def delete_policy(self, profile_id: str, delegate_id: str, capability=None) -> bool:
        response = await self.request(
            self.policies_url(profile_id, delegate_id),
            method="DELETE",
            capability=self._root(profile_id, capability),
            action="write",
        )
        return response.json()["deleted"]

    async def refresh(
        self, profile_id: str, capability: Capability, invoked: Optional[Union[str, Capability]] = None
    ) -> Capability:
        """
        Ask ``profile_id``'s service to refresh ``capability``.

        Args:
            profile_id: The profile that delegated ``capability``.
            capability: The capability to refresh.
            invoked: Capability authorizing the refresh call (default: ``capability``).
        """
        url = f"{self.policies_url(profile_id, capability['controller'])}/refresh"
        return await self.write(url, capability, invoked or capability)

    async def get_refresh_policy(
        self, profile_id: str, delegate_id: str, capability: Union[str, Capability]
    ) -> Dict[str, Any]:
        data = await self.read(f"{self.policies_url(profile_id, delegate_id)}/refresh/policy", capability)
        return data["policy"]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Close the HTTP client if this client created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ZcapClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
