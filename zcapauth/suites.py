"""
Signature suites.

A SignatureSuite is the only place zcapauth touches signature cryptography.
It is injected into every component that signs or verifies, so tests can
substitute a deterministic fake and deployments can swap algorithms.
"""

import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from jwcrypto import jwk

from zcapauth.capability import canonicalize, strip_proof
from zcapauth.errors import DataError
from zcapauth.keys import SignerInterface, decode_multikey

logger = logging.getLogger(__name__)


class SignatureSuite(ABC):
    """Abstract sign/verify primitive for delegation proofs and HTTP signatures."""

    @abstractmethod
    async def sign(
        self,
        document: Dict[str, Any],
        *,
        signer: SignerInterface,
        proof_purpose: str,
        capability_chain: List[Union[str, Dict[str, Any]]],
        created: str,
    ) -> Dict[str, Any]:
        """Create a proof over ``document`` (which must not contain a proof)."""
        pass

    @abstractmethod
    async def verify(
        self, document: Dict[str, Any], proof: Dict[str, Any], *, verification_method: Dict[str, Any]
    ) -> bool:
        """Verify ``proof`` over ``document`` with the given verification method."""
        pass

    @abstractmethod
    async def verify_bytes(
        self, data: bytes, signature: bytes, *, verification_method: Dict[str, Any]
    ) -> bool:
        """Verify a raw signature (used for HTTP signatures)."""
        pass

    def matches_proof(self, proof: Dict[str, Any]) -> bool:
        """Whether this suite can verify ``proof``."""
        return True


class Ed25519Suite(SignatureSuite):
    """
    ``eddsa-jcs-2022`` Data Integrity suite.

    The signed bytes are ``sha256(canonical proof options) || sha256(canonical
    document)``; the proof value is the base58btc multibase Ed25519 signature.
    """

    type = "DataIntegrityProof"
    cryptosuite = "eddsa-jcs-2022"

    async def sign(
        self,
        document: Dict[str, Any],
        *,
        signer: SignerInterface,
        proof_purpose: str,
        capability_chain: List[Union[str, Dict[str, Any]]],
        created: str,
    ) -> Dict[str, Any]:
        proof = {
            "type": self.type,
            "cryptosuite": self.cryptosuite,
            "created": created,
            "verificationMethod": signer.id,
            "proofPurpose": proof_purpose,
            "capabilityChain": capability_chain,
        }
        signature = await signer.sign(self._hash_data(document, proof))
        proof["proofValue"] = "z" + base58.b58encode(signature).decode("ascii")
        return proof

    async def verify(
        self, document: Dict[str, Any], proof: Dict[str, Any], *, verification_method: Dict[str, Any]
    ) -> bool:
        if not self.matches_proof(proof):
            return False

        proof_value = proof.get("proofValue")
        if not isinstance(proof_value, str) or not proof_value.startswith("z"):
            logger.debug("Proof has no base58btc proofValue")
            return False
        try:
            signature = base58.b58decode(proof_value[1:])
        except ValueError:
            return False

        options = {k: v for k, v in proof.items() if k != "proofValue"}
        return self._verify_raw(
            self._hash_data(document, options), signature, verification_method
        )

    async def verify_bytes(
        self, data: bytes, signature: bytes, *, verification_method: Dict[str, Any]
    ) -> bool:
        return self._verify_raw(data, signature, verification_method)

    def matches_proof(self, proof: Dict[str, Any]) -> bool:
        return proof.get("type") == self.type and proof.get("cryptosuite") == self.cryptosuite

    @staticmethod
    def _hash_data(document: Dict[str, Any], proof_options: Dict[str, Any]) -> bytes:
        proof_hash = hashlib.sha256(canonicalize(proof_options).encode("utf-8")).digest()
        doc_hash = hashlib.sha256(canonicalize(strip_proof(document)).encode("utf-8")).digest()
        return proof_hash + doc_hash

    def _verify_raw(
        self, data: bytes, signature: bytes, verification_method: Dict[str, Any]
    ) -> bool:
        public_key = get_public_key(verification_method)
        try:
            public_key.verify(signature, data)
            return True
        except InvalidSignature:
            logger.debug(f"Invalid signature for {verification_method.get('id')}")
            return False


def get_public_key(verification_method: Dict[str, Any]) -> Ed25519PublicKey:
    """
    Extract the Ed25519 public key from a Multikey or JWK verification method.

    Raises:
        DataError: If the verification method carries no usable Ed25519 key.
    """
    multibase: Optional[str] = verification_method.get("publicKeyMultibase")
    if multibase:
        return Ed25519PublicKey.from_public_bytes(decode_multikey(multibase))

    key_jwk = verification_method.get("publicKeyJwk")
    if key_jwk:
        if key_jwk.get("kty") != "OKP" or key_jwk.get("crv") != "Ed25519":
            raise DataError("Verification method key must be an Ed25519 JWK.")
        try:
            return jwk.JWK(**key_jwk).get_op_key("verify")
        except Exception as e:
            raise DataError(f"Invalid verification method JWK: {e}", cause=e)

    raise DataError(f'Verification method "{verification_method.get("id")}" has no public key.')


def encode_signature(signature: bytes) -> str:
    """Base64 (standard alphabet) encoding used by HTTP signatures."""
    return base64.b64encode(signature).decode("ascii")


def decode_signature(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise DataError("HTTP signature is not valid base64.", cause=e)
