"""Tests for DPoP proof keys."""

import json

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from posse_bridge.dpop import ProofKey, _b64decode, access_token_hash, proof_target
from posse_bridge.errors import ValidationError


def decode(token: str) -> tuple[dict, dict, bytes, str]:
    header, payload, signature = token.split(".")
    return (
        json.loads(_b64decode(header)),
        json.loads(_b64decode(payload)),
        _b64decode(signature),
        f"{header}.{payload}",
    )


class TestProofKey:
    def test_jwk_round_trip_keeps_key(self, proof_key):
        restored = ProofKey.from_jwk(proof_key.to_jwk())
        assert restored.thumbprint() == proof_key.thumbprint()

    def test_public_jwk_has_no_private_part(self, proof_key):
        jwk = proof_key.public_jwk()
        assert "d" not in jwk
        assert jwk["kty"] == "EC" and jwk["crv"] == "P-256"

    def test_rejects_wrong_curve(self):
        with pytest.raises(ValidationError):
            ProofKey(ec.generate_private_key(ec.SECP384R1()))

    def test_rejects_jwk_without_private_part(self, proof_key):
        with pytest.raises(ValidationError):
            ProofKey.from_jwk(proof_key.public_jwk())

    def test_rejects_mismatched_public_coordinates(self, proof_key):
        jwk = proof_key.to_jwk()
        jwk["x"] = ProofKey.generate().public_jwk()["x"]
        with pytest.raises(ValidationError):
            ProofKey.from_jwk(jwk)

    def test_thumbprint_is_stable(self, proof_key):
        assert proof_key.thumbprint() == proof_key.thumbprint()
        assert proof_key.thumbprint() != ProofKey.generate().thumbprint()


class TestProof:
    def test_claims(self, proof_key):
        token = proof_key.proof("post", "https://pds.test/xrpc/x?a=1#f", nonce="n1",
                                access_token="tok", now=1000)
        header, payload, _, _ = decode(token)
        assert header["typ"] == "dpop+jwt"
        assert header["alg"] == "ES256"
        assert header["jwk"] == proof_key.public_jwk()
        assert payload["htm"] == "POST"
        assert payload["htu"] == "https://pds.test/xrpc/x"
        assert payload["iat"] == 1000
        assert payload["nonce"] == "n1"
        assert payload["ath"] == access_token_hash("tok")

    def test_optional_claims_omitted(self, proof_key):
        _, payload, _, _ = decode(proof_key.proof("GET", "https://auth.test/token"))
        assert "nonce" not in payload
        assert "ath" not in payload

    def test_fresh_jti_per_proof(self, proof_key):
        first = decode(proof_key.proof("GET", "https://a.test"))[1]["jti"]
        second = decode(proof_key.proof("GET", "https://a.test"))[1]["jti"]
        assert first != second

    def test_signature_verifies(self, proof_key):
        _, _, signature, signing_input = decode(proof_key.proof("GET", "https://a.test"))
        assert len(signature) == 64
        der = encode_dss_signature(
            int.from_bytes(signature[:32], "big"),
            int.from_bytes(signature[32:], "big"),
        )
        proof_key.public_key.verify(der, signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))


class TestHelpers:
    def test_proof_target_strips_query(self):
        assert proof_target("https://h.test/p?q=1") == "https://h.test/p"

    def test_access_token_hash_is_unpadded(self):
        assert "=" not in access_token_hash("anything")
