"""DPoP proof-of-possession keys (RFC 9449).

Every AT Protocol OAuth token is bound to one EC P-256 key pair held by
this client. Each request to the authorization server or the PDS carries a
fresh ES256-signed proof JWT naming the HTTP method and URL; requests with
an access token also carry its hash (`ath`). The private half is stored
with the grant as a JWK and never leaves the process.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
import urllib.parse
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from posse_bridge.errors import ValidationError

_COORD_BYTES = 32


def _b64(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    return urlsafe_b64decode(value + "=" * (-len(value) % 4))


def access_token_hash(access_token: str) -> str:
    """The `ath` claim: base64url(SHA-256(access_token))."""
    return _b64(hashlib.sha256(access_token.encode("ascii")).digest())


def proof_target(url: str) -> str:
    """The `htu` claim: the request URL without query and fragment."""
    parts = urllib.parse.urlsplit(url)
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class ProofKey:
    """An EC P-256 signing key used for DPoP proofs."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey) -> None:
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise ValidationError("DPoP keys must be on the P-256 curve")
        self._key = private_key

    @classmethod
    def generate(cls) -> ProofKey:
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def from_jwk(cls, jwk: dict[str, Any]) -> ProofKey:
        if jwk.get("kty") != "EC" or jwk.get("crv") != "P-256" or "d" not in jwk:
            raise ValidationError("Proof key must be a private EC P-256 JWK")
        d = int.from_bytes(_b64decode(jwk["d"]), "big")
        key = cls(ec.derive_private_key(d, ec.SECP256R1()))
        public = key.public_jwk()
        if "x" in jwk and (jwk["x"], jwk.get("y")) != (public["x"], public["y"]):
            raise ValidationError("Proof key JWK public coordinates do not match its private scalar")
        return key

    def to_jwk(self) -> dict[str, str]:
        """Private JWK, for persistence alongside the grant only."""
        jwk = self.public_jwk()
        d = self._key.private_numbers().private_value
        jwk["d"] = _b64(d.to_bytes(_COORD_BYTES, "big"))
        return jwk

    def public_jwk(self) -> dict[str, str]:
        numbers = self._key.public_key().public_numbers()
        return {
            "kty": "EC",
            "crv": "P-256",
            "x": _b64(numbers.x.to_bytes(_COORD_BYTES, "big")),
            "y": _b64(numbers.y.to_bytes(_COORD_BYTES, "big")),
        }

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._key.public_key()

    def thumbprint(self) -> str:
        """RFC 7638 JWK thumbprint (the `jkt` the server binds tokens to)."""
        jwk = self.public_jwk()
        canonical = json.dumps(
            {k: jwk[k] for k in ("crv", "kty", "x", "y")},
            separators=(",", ":"), sort_keys=True,
        )
        return _b64(hashlib.sha256(canonical.encode("utf-8")).digest())

    def sign(self, data: bytes) -> bytes:
        """ES256 signature in JWS form (raw r || s, 64 bytes)."""
        der = self._key.sign(data, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(_COORD_BYTES, "big") + s.to_bytes(_COORD_BYTES, "big")

    def proof(
        self,
        method: str,
        url: str,
        nonce: str | None = None,
        access_token: str | None = None,
        now: float | None = None,
    ) -> str:
        """Build a signed DPoP proof JWT for one request."""
        header = {"typ": "dpop+jwt", "alg": "ES256", "jwk": self.public_jwk()}
        payload: dict[str, Any] = {
            "jti": uuid.uuid4().hex,
            "htm": method.upper(),
            "htu": proof_target(url),
            "iat": int(now if now is not None else time.time()),
        }
        if nonce:
            payload["nonce"] = nonce
        if access_token:
            payload["ath"] = access_token_hash(access_token)

        header_b64 = _b64(json.dumps(header, separators=(",", ":")).encode())
        payload_b64 = _b64(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_b64}.{payload_b64}"
        return f"{signing_input}.{_b64(self.sign(signing_input.encode('ascii')))}"
