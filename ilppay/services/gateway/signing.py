"""HTTP message signatures for authenticated Open Payments requests.

Requests are signed with the sending wallet's Ed25519 key. The signature covers
the method, target URI, the GNAP authorization header when present and, for
requests with a body, its digest, length and content type.
"""

import base64
import hashlib
import time
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ilppay.common.errors import InternalConfigError

SIGNATURE_LABEL = "sig1"


def content_digest(body: bytes) -> str:
    digest = base64.b64encode(hashlib.sha512(body).digest()).decode("ascii")
    return f"sha-512=:{digest}:"


class RequestSigner:
    """Produces `Signature`/`Signature-Input` headers for one key."""

    def __init__(self, private_key: Ed25519PrivateKey, key_id: str, clock=time.time) -> None:
        self.private_key = private_key
        self.key_id = key_id
        self._clock = clock

    def sign(self, method: str, url: str, headers: dict[str, str], body: bytes | None = None) -> dict[str, str]:
        """Return the headers to send: the given ones plus digest and signature."""

        signed = {name.lower(): value for name, value in headers.items()}
        components = ['"@method"', '"@target-uri"']
        values = [method.upper(), url]
        if "authorization" in signed:
            components.append('"authorization"')
            values.append(signed["authorization"])
        if body:
            signed["content-digest"] = content_digest(body)
            signed["content-length"] = str(len(body))
            signed.setdefault("content-type", "application/json")
            for name in ("content-digest", "content-length", "content-type"):
                components.append(f'"{name}"')
                values.append(signed[name])

        params = f'({" ".join(components)});keyid="{self.key_id}";created={int(self._clock())}'
        lines = [f"{component}: {value}" for component, value in zip(components, values)]
        lines.append(f'"@signature-params": {params}')
        signature_base = "\n".join(lines).encode("utf-8")

        signature = base64.b64encode(self.private_key.sign(signature_base)).decode("ascii")
        signed["signature-input"] = f"{SIGNATURE_LABEL}={params}"
        signed["signature"] = f"{SIGNATURE_LABEL}=:{signature}:"
        return signed


def load_private_key(path: str) -> Ed25519PrivateKey:
    """Read an Ed25519 PEM key; any problem is a fatal configuration error."""

    key_path = Path(path)
    if not key_path.is_file():
        raise InternalConfigError(f"private key file not found: {path}")
    pem = key_path.read_bytes().strip()
    if not pem:
        raise InternalConfigError(f"private key file is empty: {path}")
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as exc:
        raise InternalConfigError(f"invalid private key PEM: {exc}") from exc
    if not isinstance(key, Ed25519PrivateKey):
        raise InternalConfigError("private key must be an Ed25519 key")
    return key


def load_request_signer(private_key_path: str, key_id: str) -> RequestSigner:
    if not key_id:
        raise InternalConfigError("KEY_ID is not configured")
    return RequestSigner(load_private_key(private_key_path), key_id)
