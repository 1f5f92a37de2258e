"""
Tests for key material, signers and the Ed25519 signature suite.
"""

import json

import pytest
from jwcrypto import jwk

from zcapauth.capability import CAPABILITY_DELEGATION
from zcapauth.errors import DataError
from zcapauth.keys import (
    Ed25519Signer,
    decode_multikey,
    encode_multikey,
    generate_identity,
    key_pair_from_jwk,
    load_signers,
)
from zcapauth.suites import Ed25519Suite, decode_signature, encode_signature, get_public_key


class TestIdentities:
    """Tests for did:key identities."""

    def test_generate_identity(self):
        identity = generate_identity()
        assert identity.did.startswith("did:key:z6Mk")
        assert identity.verification_method == f"{identity.did}#{identity.public_key_multibase}"

    def test_key_pair_from_jwk_is_stable(self):
        identity = generate_identity()
        again = key_pair_from_jwk(identity.private_key_jwk)
        assert again.did == identity.did

    def test_multikey_round_trip(self):
        raw = bytes(range(32))
        assert decode_multikey(encode_multikey(raw)) == raw

    @pytest.mark.parametrize("value", ["", "abc", "z", "z111"])
    def test_decode_invalid_multikey(self, value):
        with pytest.raises(DataError):
            decode_multikey(value)


class TestEd25519Signer:
    """Tests for Ed25519Signer validation."""

    def test_requires_key(self):
        with pytest.raises(ValueError):
            Ed25519Signer("", id="did:key:z1#z1")

    def test_requires_id(self):
        with pytest.raises(ValueError):
            Ed25519Signer(generate_identity().private_key_jwk, id="")

    def test_rejects_public_key(self):
        identity = generate_identity()
        with pytest.raises(ValueError):
            Ed25519Signer(identity.public_key_jwk, id=identity.verification_method)

    def test_rejects_non_ed25519_key(self):
        key = jwk.JWK.generate(kty="EC", crv="P-256")
        with pytest.raises(ValueError):
            Ed25519Signer(key.export_private(), id="did:example:1#k")

    def test_controller_defaults_to_did(self):
        identity = generate_identity()
        signer = Ed25519Signer(identity.private_key_jwk, id=identity.verification_method)
        assert signer.controller == identity.did

    def test_load_signers(self, tmp_path):
        identity = generate_identity()
        path = tmp_path / "signers.json"
        path.write_text(json.dumps({
            "profiles": {identity.did: {"private_key_jwk": identity.private_key_jwk}}
        }))

        signers = load_signers(str(path))

        assert signers[identity.did].id == identity.verification_method
        assert signers[identity.did].controller == identity.did


class TestEd25519Suite:
    """Tests for the eddsa-jcs-2022 suite."""

    @pytest.fixture
    def method(self, profile):
        return {
            "id": profile.verification_method,
            "type": "Multikey",
            "controller": profile.did,
            "publicKeyMultibase": profile.public_key_multibase,
        }

    async def _sign(self, suite, profile, document):
        return await suite.sign(
            document,
            signer=profile.signer(),
            proof_purpose=CAPABILITY_DELEGATION,
            capability_chain=["urn:zcap:root:x"],
            created="2024-01-01T00:00:00.000Z",
        )

    @pytest.mark.asyncio
    async def test_sign_and_verify(self, suite, profile, method):
        document = {"id": "urn:uuid:1", "controller": "did:key:z1"}
        proof = await self._sign(suite, profile, document)

        assert proof["type"] == "DataIntegrityProof"
        assert proof["cryptosuite"] == "eddsa-jcs-2022"
        assert proof["proofValue"].startswith("z")
        assert await suite.verify({**document, "proof": proof}, proof, verification_method=method)

    @pytest.mark.asyncio
    async def test_tampered_document_fails(self, suite, profile, method):
        document = {"id": "urn:uuid:1", "controller": "did:key:z1"}
        proof = await self._sign(suite, profile, document)
        tampered = {**document, "controller": "did:key:z2"}
        assert not await suite.verify(tampered, proof, verification_method=method)

    @pytest.mark.asyncio
    async def test_tampered_proof_options_fail(self, suite, profile, method):
        document = {"id": "urn:uuid:1"}
        proof = await self._sign(suite, profile, document)
        tampered = {**proof, "capabilityChain": ["urn:zcap:root:y"]}
        assert not await suite.verify(document, tampered, verification_method=method)

    @pytest.mark.asyncio
    async def test_wrong_key_fails(self, suite, profile, delegate):
        document = {"id": "urn:uuid:1"}
        proof = await self._sign(suite, profile, document)
        other = {"id": delegate.verification_method, "publicKeyMultibase": delegate.public_key_multibase}
        assert not await suite.verify(document, proof, verification_method=other)

    @pytest.mark.asyncio
    async def test_jwk_verification_method(self, suite, profile):
        document = {"id": "urn:uuid:1"}
        proof = await self._sign(suite, profile, document)
        method = {"id": "did:example:1#key", "publicKeyJwk": json.loads(profile.public_key_jwk)}
        assert await suite.verify(document, proof, verification_method=method)

    def test_method_without_key_rejected(self):
        with pytest.raises(DataError):
            get_public_key({"id": "did:example:1#key"})

    def test_other_suites_not_matched(self, suite):
        assert not suite.matches_proof({"type": "Ed25519Signature2020"})

    def test_http_signature_encoding(self):
        assert decode_signature(encode_signature(b"\x00\x01sig")) == b"\x00\x01sig"
        with pytest.raises(DataError):
            decode_signature("not base64!")
