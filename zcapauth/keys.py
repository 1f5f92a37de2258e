"""
Ed25519 key material for zcapauth.

Keys are JWKs (jwcrypto) on the signing side and Multikey / JWK verification
methods on the verifying side. Identities default to ``did:key`` so that a
profile's verification method can be derived without any network lookup.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import base58
from jwcrypto import jwk

from zcapauth.errors import DataError

logger = logging.getLogger(__name__)

# Multicodec prefix for Ed25519 public keys (varint-encoded 0xed01)
ED25519_MULTICODEC_PREFIX = b"\xed\x01"


def encode_multikey(public_key_bytes: bytes) -> str:
    """Encode a raw Ed25519 public key as a base58btc multibase Multikey."""
    encoded = base58.b58encode(ED25519_MULTICODEC_PREFIX + public_key_bytes).decode("ascii")
    return f"z{encoded}"


def decode_multikey(multibase: str) -> bytes:
    """
    Decode a base58btc Multikey back to the raw 32-byte Ed25519 public key.

    Raises:
        DataError: If the value is not an Ed25519 Multikey.
    """
    if not multibase or not multibase.startswith("z"):
        raise DataError(f"Unsupported multibase encoding: {multibase!r}")
    try:
        decoded = base58.b58decode(multibase[1:])
    except ValueError as e:
        raise DataError(f"Invalid base58btc value: {multibase!r}", cause=e)
    if decoded[:2] != ED25519_MULTICODEC_PREFIX or len(decoded) != 34:
        raise DataError("Only Ed25519 (0xed01) Multikeys are supported.")
    return decoded[2:]


def public_key_bytes(key: jwk.JWK) -> bytes:
    """Raw public key bytes of an OKP/Ed25519 JWK."""
    return key.get_op_key("verify").public_bytes_raw()


@dataclass
class KeyPair:
    """
    An Ed25519 identity.

    Attributes:
        did: The controller DID (``did:key:z...``).
        verification_method: Id of the key's verification method (``did#fragment``).
        private_key_jwk: JWK JSON string containing the private key.
        public_key_jwk: JWK JSON string containing the public key.
        public_key_multibase: The public key as a Multikey.
    """

    did: str
    verification_method: str
    private_key_jwk: str
    public_key_jwk: str
    public_key_multibase: str

    def signer(self) -> "Ed25519Signer":
        return Ed25519Signer(
            private_key=self.private_key_jwk, id=self.verification_method, controller=self.did
        )


def key_pair_from_jwk(private_key_jwk: str) -> KeyPair:
    """Derive the ``did:key`` identity of an existing Ed25519 private JWK."""
    key = jwk.JWK.from_json(private_key_jwk)
    multibase = encode_multikey(public_key_bytes(key))
    did = f"did:key:{multibase}"
    return KeyPair(
        did=did,
        verification_method=f"{did}#{multibase}",
        private_key_jwk=key.export_private(),
        public_key_jwk=key.export_public(),
        public_key_multibase=multibase,
    )


def generate_identity() -> KeyPair:
    """Generate a fresh Ed25519 ``did:key`` identity."""
    key = jwk.JWK.generate(kty="OKP", crv="Ed25519")
    return key_pair_from_jwk(key.export_private())


class SignerInterface(ABC):
    """Something that can sign on behalf of a verification method."""

    id: str
    controller: Optional[str] = None

    @abstractmethod
    async def sign(self, data: bytes) -> bytes:
        """Return the raw signature over ``data``."""
        pass


class Ed25519Signer(SignerInterface):
    """
    Signs bytes with an Ed25519 private key.

    Example:
        >>> identity = generate_identity()
        >>> signer = Ed25519Signer(identity.private_key_jwk, id=identity.verification_method)
        >>> signature = await signer.sign(b"hello")
    """

    def __init__(self, private_key: str, id: str, controller: Optional[str] = None):
        """
        Initialize the signer.

        Args:
            private_key: JWK JSON string containing the Ed25519 private key.
            id: Verification method id the signatures will be attributed to.
            controller: Controller of the verification method (optional).

        Raises:
            ValueError: If the key is missing or not an Ed25519 private key.
        """
        if not private_key:
            raise ValueError("Ed25519Signer requires 'private_key' (JWK JSON string)")
        if not id:
            raise ValueError("Ed25519Signer requires 'id' (verification method id)")

        try:
            self._key = jwk.JWK.from_json(private_key)
        except Exception as e:
            raise ValueError(f"Invalid JWK private key: {e}")
        if self._key["kty"] != "OKP" or self._key.get("crv") != "Ed25519":
            raise ValueError("Key must be an Ed25519 key (OKP with crv=Ed25519)")
        if not self._key.has_private:
            raise ValueError("JWK does not contain a private key")

        self.id = id
        self.controller = controller or id.split("#", 1)[0]

    async def sign(self, data: bytes) -> bytes:
        return self._key.get_op_key("sign").sign(data)

    def get_public_key_jwk(self) -> str:
        """Returns the public key in JWK format."""
        return self._key.export_public()

    def __repr__(self) -> str:
        return f"Ed25519Signer(id={self.id!r})"


def load_signers(path: str) -> dict:
    """
    Load profile signers from a JSON file.

    Expected format::

        {"profiles": {"<profile id>": {"private_key_jwk": "{...}", "id": "<vm id>"}}}

    ``id`` may be omitted for ``did:key`` profiles; it is derived from the key.

    Returns:
        Dict mapping profile id to Ed25519Signer.
    """
    with open(path, "r") as f:
        data = json.load(f)

    signers = {}
    for profile_id, entry in data.get("profiles", {}).items():
        private_key = entry["private_key_jwk"]
        if not isinstance(private_key, str):
            private_key = json.dumps(private_key)
        vm_id = entry.get("id") or key_pair_from_jwk(private_key).verification_method
        signers[profile_id] = Ed25519Signer(private_key, id=vm_id, controller=profile_id)

    logger.info(f"Loaded {len(signers)} profile signers from {path}")
    return signers
