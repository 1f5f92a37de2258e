"""
Document resolution.

Resolves verification methods, controller documents and root capabilities
through an ordered list of strategies (chain of responsibility): the first
strategy that matches a URL loads it. Root capabilities are synthesized in
memory from a trusted controller instead of being fetched.

Usage:
    resolver = DocumentResolver([StaticDocumentStrategy(), DidKeyStrategy(), DidWebStrategy()])
    scoped = resolver.with_root_controller(lambda root_id, target: profile_id)
    root = await scoped.load("urn:zcap:root:https%3A%2F%2F...")
"""

from __future__ import annotations

import inspect
import logging
import urllib.parse
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from zcapauth.cache import LruCache
from zcapauth.capability import (
    create_root_capability,
    get_root_invocation_target,
    is_root_capability_id,
)
from zcapauth.errors import DataError, NotAllowedError, NotFoundError
from zcapauth.keys import decode_multikey

logger = logging.getLogger(__name__)

DID_CONTEXT_URL = "https://www.w3.org/ns/did/v1"
MULTIKEY_CONTEXT_URL = "https://w3id.org/security/multikey/v1"

VERIFICATION_RELATIONSHIPS = (
    "authentication",
    "assertionMethod",
    "capabilityDelegation",
    "capabilityInvocation",
)

RootControllerFn = Callable[[str, str], Union[str, List[str], Awaitable[Union[str, List[str]]]]]


class ResolverStrategy(ABC):
    """One way of loading documents."""

    @abstractmethod
    def matches(self, url: str) -> bool:
        pass

    @abstractmethod
    async def load(self, url: str) -> Dict[str, Any]:
        pass


class RootCapabilityStrategy(ResolverStrategy):
    """Synthesizes ``urn:zcap:root:`` capabilities from a trusted controller."""

    def __init__(self, get_root_controller: RootControllerFn):
        self._get_root_controller = get_root_controller

    def matches(self, url: str) -> bool:
        return is_root_capability_id(url)

    async def load(self, url: str) -> Dict[str, Any]:
        target = get_root_invocation_target(url)
        controller = self._get_root_controller(url, target)
        if inspect.isawaitable(controller):
            controller = await controller
        if not controller:
            raise NotFoundError(f'No root controller for "{url}".')
        return create_root_capability(controller=controller, invocation_target=target)


class StaticDocumentStrategy(ResolverStrategy):
    """
    Pre-registered documents (controller documents, verification methods).

    Registering a controller document also registers each of its embedded
    verification methods under their own ids.
    """

    def __init__(self, documents: Optional[List[Dict[str, Any]]] = None):
        self._documents: Dict[str, Dict[str, Any]] = {}
        for document in documents or []:
            self.add(document)

    def add(self, document: Dict[str, Any]) -> None:
        doc_id = document["id"]
        self._documents[doc_id] = document
        for method in document.get("verificationMethod", []):
            self._documents[method["id"]] = {"controller": doc_id, **method}
        logger.debug(f"Registered document: {doc_id}")

    def remove(self, doc_id: str) -> bool:
        return self._documents.pop(doc_id, None) is not None

    def matches(self, url: str) -> bool:
        return url in self._documents

    async def load(self, url: str) -> Dict[str, Any]:
        return self._documents[url]


class DidKeyStrategy(ResolverStrategy):
    """Derives Ed25519 ``did:key`` documents locally."""

    def matches(self, url: str) -> bool:
        return url.startswith("did:key:")

    async def load(self, url: str) -> Dict[str, Any]:
        did, _, fragment = url.partition("#")
        multibase = did[len("did:key:"):]
        decode_multikey(multibase)

        method = {
            "id": f"{did}#{multibase}",
            "type": "Multikey",
            "controller": did,
            "publicKeyMultibase": multibase,
        }
        if fragment:
            if fragment != multibase:
                raise NotFoundError(f'Verification method "{url}" not found.')
            return {"@context": MULTIKEY_CONTEXT_URL, **method}

        document = {
            "@context": [DID_CONTEXT_URL, MULTIKEY_CONTEXT_URL],
            "id": did,
            "verificationMethod": [method],
        }
        for relationship in VERIFICATION_RELATIONSHIPS:
            document[relationship] = [method["id"]]
        return document


def did_web_to_url(did: str) -> str:
    """
    Convert a did:web identifier to a URL.

    Examples:
        did:web:example.com → https://example.com/.well-known/did.json
        did:web:example.com:user:alice → https://example.com/user/alice/did.json
        did:web:example.com%3A8080 → https://example.com:8080/.well-known/did.json

    Raises:
        ValueError: If the DID is not a valid did:web identifier
    """
    if not did.startswith("did:web:"):
        raise ValueError(f"Not a did:web identifier: {did}")

    parts = did[8:].split(":")
    domain = urllib.parse.unquote(parts[0])
    if not domain:
        raise ValueError(f"Not a did:web identifier: {did}")

    if len(parts) > 1:
        path = "/" + "/".join(parts[1:]) + "/did.json"
    else:
        path = "/.well-known/did.json"

    return f"https://{domain}{path}"


class DidWebStrategy(ResolverStrategy):
    """
    Fetches ``did:web`` documents over HTTPS.

    Fetched documents are memoized so that concurrent verifications of the
    same controller share one request.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        cache: Optional[LruCache] = None,
    ):
        self._http_client = http_client
        self._timeout = timeout
        self._cache = cache or LruCache(max_size=1000, ttl=300)

    def matches(self, url: str) -> bool:
        return url.startswith("did:web:")

    async def load(self, url: str) -> Dict[str, Any]:
        did, _, fragment = url.partition("#")
        document = await self._cache.memoize(did, lambda: self._fetch(did))
        if not fragment:
            return document

        for method in document.get("verificationMethod", []):
            method_id = method.get("id", "")
            if method_id == url or method_id == f"#{fragment}":
                return {"controller": did, **method, "id": url}
        raise NotFoundError(f'Verification method "{url}" not found.')

    async def _fetch(self, did: str) -> Dict[str, Any]:
        try:
            url = did_web_to_url(did)
        except ValueError as e:
            raise DataError(str(e), cause=e)

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.get(
                url, headers={"Accept": "application/did+json, application/json"}
            )
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as e:
            logger.debug(f"DID resolution failed for {did}: {e}")
            raise NotFoundError(f'Could not resolve "{did}".', cause=e)
        finally:
            if not self._http_client:
                await client.aclose()

        if not isinstance(document, dict):
            raise DataError(f'DID document for "{did}" is not a JSON object.')
        if document.get("id") != did:
            raise DataError(f'DID document id does not match "{did}".')
        return document


class DocumentResolver:
    """
    Ordered list of resolution strategies.

    Example:
        >>> resolver = DocumentResolver([DidKeyStrategy()])
        >>> method = await resolver.get_verification_method(vm_id, "capabilityDelegation")
    """

    def __init__(self, strategies: Optional[List[ResolverStrategy]] = None):
        self._strategies: List[ResolverStrategy] = list(strategies or [])

    @property
    def strategies(self) -> List[ResolverStrategy]:
        return list(self._strategies)

    def with_root_controller(self, get_root_controller: RootControllerFn) -> "DocumentResolver":
        """Return a resolver that synthesizes root capabilities before anything else."""
        return DocumentResolver([RootCapabilityStrategy(get_root_controller), *self._strategies])

    async def load(self, url: str) -> Dict[str, Any]:
        """
        Load the document identified by ``url``.

        Raises:
            NotFoundError: If no strategy matches.
        """
        for strategy in self._strategies:
            if strategy.matches(url):
                return await strategy.load(url)
        raise NotFoundError(f'Document "{url}" not found.')

    async def get_verification_method(
        self, verification_method_id: str, proof_purpose: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Load a verification method and check its controller authorizes it.

        When ``proof_purpose`` is given, the controller document must list the
        method under that verification relationship.

        Raises:
            NotFoundError: If the method or its controller cannot be loaded.
            NotAllowedError: If the controller does not authorize the method.
        """
        method = await self.load(verification_method_id)
        controller = method.get("controller")
        if not isinstance(controller, str) or not controller:
            raise DataError(f'Verification method "{verification_method_id}" has no controller.')
        if proof_purpose is None:
            return method

        controller_doc = await self.load(controller)
        authorized = []
        for entry in controller_doc.get(proof_purpose, []):
            entry_id = entry if isinstance(entry, str) else entry.get("id", "")
            if entry_id.startswith("#"):
                entry_id = controller + entry_id
            authorized.append(entry_id)
        if verification_method_id not in authorized:
            raise NotAllowedError(
                f'Verification method "{verification_method_id}" is not authorized '
                f'by "{controller}" for "{proof_purpose}".'
            )
        return method
