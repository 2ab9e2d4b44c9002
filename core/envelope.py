"""
core/envelope.py -- Password-based envelope encryption for relayed keys.

Every key release is encrypted under the caller's own secret (its API key):

  key      = PBKDF2-HMAC-SHA256(secret, salt, 100_000 iterations, 32 bytes)
  ct||tag  = AES-256-GCM(key, iv).encrypt(plaintext)

salt (32 bytes) and iv (16 bytes) come from os.urandom on every call, so two
envelopes never share a (salt, iv) pair. The transport form is a compact JSON
object of lowercase hex strings:

  {"ciphertext": "...", "salt": "...", "iv": "...", "authTag": "..."}

Browser clients can decrypt it with WebCrypto: PBKDF2 -> AES-GCM with
ciphertext and authTag concatenated.

Security notes:
  Tag verification is done by the AEAD primitive (AESGCM.decrypt raises
  InvalidTag before returning anything). There is no manual comparison and
  no partial plaintext on failure.

  Every decode failure -- bad JSON, missing field, odd-length hex, wrong
  salt/iv/tag length, tag mismatch -- surfaces as the same
  AuthenticationFailure so callers cannot probe which check tripped.

  Never log plaintext, derived keys, or the secret.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import binascii
import json
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.errors import AuthenticationFailure

ALGORITHM = "aes-256-gcm"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


@dataclass(frozen=True)
class Envelope:
    """Encrypted key payload. All fields are lowercase hex strings."""

    ciphertext: str
    salt: str
    iv: str
    auth_tag: str

    def to_dict(self) -> dict[str, str]:
        return {
            "ciphertext": self.ciphertext,
            "salt": self.salt,
            "iv": self.iv,
            "authTag": self.auth_tag,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict) -> "Envelope":
        """Build an Envelope from its transport dict.

        Accepts the legacy field name "encrypted" for ciphertext so envelopes
        issued by earlier deployments still decode.
        """
        if not isinstance(data, dict):
            raise AuthenticationFailure()
        ciphertext = data.get("ciphertext", data.get("encrypted"))
        fields = (ciphertext, data.get("salt"), data.get("iv"), data.get("authTag"))
        if not all(isinstance(f, str) for f in fields):
            raise AuthenticationFailure()
        return cls(*fields)

    @classmethod
    def from_json(cls, raw: str) -> "Envelope":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise AuthenticationFailure() from exc
        return cls.from_dict(data)


def derive_key(secret: str, salt: bytes) -> bytes:
    """Derive the 32-byte AES key for (secret, salt)."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(plaintext: bytes | str, secret: str) -> Envelope:
    """Encrypt plaintext under secret with a fresh salt and IV."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(derive_key(secret, salt)).encrypt(iv, plaintext, None)
    # cryptography appends the tag to the ciphertext; the envelope keeps them apart.
    return Envelope(
        ciphertext=sealed[:-TAG_LENGTH].hex(),
        salt=salt.hex(),
        iv=iv.hex(),
        auth_tag=sealed[-TAG_LENGTH:].hex(),
    )


def decrypt(envelope: Envelope | dict | str, secret: str) -> bytes:
    """Verify and decrypt an envelope. Raises AuthenticationFailure on any failure."""
    if isinstance(envelope, str):
        envelope = Envelope.from_json(envelope)
    elif isinstance(envelope, dict):
        envelope = Envelope.from_dict(envelope)

    try:
        ciphertext = bytes.fromhex(envelope.ciphertext)
        salt = bytes.fromhex(envelope.salt)
        iv = bytes.fromhex(envelope.iv)
        tag = bytes.fromhex(envelope.auth_tag)
    except (ValueError, binascii.Error) as exc:
        raise AuthenticationFailure() from exc

    if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise AuthenticationFailure()

    try:
        return AESGCM(derive_key(secret, salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise AuthenticationFailure() from exc


def encrypt_key(plaintext: str, secret: str) -> str:
    """Encrypt a provider key and return the JSON transport string."""
    return encrypt(plaintext, secret).to_json()


def decrypt_key(encrypted_data: str, secret: str) -> str:
    """Decrypt a JSON transport string back to the provider key."""
    plaintext = decrypt(encrypted_data, secret)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AuthenticationFailure() from exc
