"""Authenticated envelope around serialised sessions.

A session string ``pt`` is paired with ``HMAC-SHA512(secret, pt)``, the pair is
serialised as JSON and the JSON bytes are encrypted under the secret.  The
stored value is ``hex(nonce || ciphertext)``.  Without a secret every function
here is the identity.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Callable
from dataclasses import dataclass
from logging import getLogger

import orjson
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError
from nacl.utils import random as random_bytes

from sessionvault.errors import DecryptionError, MalformedEnvelope, TamperedSession

logger = getLogger(__name__)

DEFAULT_ALGORITHM = "aes-256-ctr"

# ---------------------------------------------------------------------------
# Cipher suites
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CipherSuite:
    name: str
    key_size: int
    nonce_size: int
    encrypt: Callable[[bytes, bytes, bytes], bytes]
    decrypt: Callable[[bytes, bytes, bytes], bytes]


def _aes_ctr_encrypt(key: bytes, nonce: bytes, data: bytes) -> bytes:
    encryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def _aes_ctr_decrypt(key: bytes, nonce: bytes, data: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).decryptor()
    return decryptor.update(data) + decryptor.finalize()


def _xchacha_encrypt(key: bytes, nonce: bytes, data: bytes) -> bytes:
    return crypto_aead_xchacha20poly1305_ietf_encrypt(data, None, nonce, key)


def _xchacha_decrypt(key: bytes, nonce: bytes, data: bytes) -> bytes:
    return crypto_aead_xchacha20poly1305_ietf_decrypt(data, None, nonce, key)


CIPHER_SUITES: dict[str, CipherSuite] = {
    suite.name: suite
    for suite in (
        CipherSuite("aes-256-ctr", 32, 16, _aes_ctr_encrypt, _aes_ctr_decrypt),
        CipherSuite("aes-192-ctr", 24, 16, _aes_ctr_encrypt, _aes_ctr_decrypt),
        CipherSuite("aes-128-ctr", 16, 16, _aes_ctr_encrypt, _aes_ctr_decrypt),
        CipherSuite("xchacha20poly1305", 32, 24, _xchacha_encrypt, _xchacha_decrypt),
    )
}


def get_suite(algorithm: str) -> CipherSuite:
    try:
        return CIPHER_SUITES[algorithm.lower()]
    except KeyError:
        known = ", ".join(sorted(CIPHER_SUITES))
        raise ValueError(
            f"unsupported algorithm {algorithm!r}; expected one of: {known}"
        ) from None


# ---------------------------------------------------------------------------
# Key material & integrity tag
# ---------------------------------------------------------------------------


def derive_key(secret: str, size: int) -> bytes:
    """Digest the secret to ``size`` bytes. No salt, no stretching."""

    return hashlib.blake2b(secret.encode("utf-8"), digest_size=size).digest()


def digest(secret: str, plaintext: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), plaintext.encode("utf-8"), hashlib.sha512
    ).hexdigest()


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------


def seal(suite: CipherSuite, key: bytes, data: bytes) -> str:
    nonce = random_bytes(suite.nonce_size)
    return (nonce + suite.encrypt(key, nonce, data)).hex()


def unseal(suite: CipherSuite, key: bytes, stored: str) -> bytes:
    try:
        packed = bytes.fromhex(stored)
    except (TypeError, ValueError) as exc:
        raise DecryptionError("stored session is not hex encoded") from exc
    if len(packed) <= suite.nonce_size:
        raise DecryptionError("stored session is truncated")

    nonce = packed[: suite.nonce_size]
    ciphertext = packed[suite.nonce_size :]
    try:
        return suite.decrypt(key, nonce, ciphertext)
    except CryptoError as exc:
        raise DecryptionError("failed to decrypt stored session") from exc


def _encode(plaintext: str, secret: str, suite: CipherSuite, key: bytes) -> str:
    envelope = orjson.dumps({"hmac": digest(secret, plaintext), "pt": plaintext})
    return seal(suite, key, envelope)


def _decode(stored: str, secret: str, suite: CipherSuite, key: bytes) -> str:
    raw = unseal(suite, key, stored)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("decrypted session is not valid UTF-8") from exc

    try:
        envelope = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise MalformedEnvelope("decrypted envelope is not valid JSON") from exc

    if not isinstance(envelope, dict):
        raise MalformedEnvelope("decrypted envelope is not an object")
    tag = envelope.get("hmac")
    pt = envelope.get("pt")
    if not isinstance(tag, str) or not isinstance(pt, str):
        raise MalformedEnvelope("decrypted envelope lacks 'hmac' or 'pt'")

    expected = digest(secret, pt)
    if not hmac.compare_digest(expected.encode("utf-8"), tag.encode("utf-8")):
        logger.warning("Session envelope failed HMAC verification")
        raise TamperedSession("Encrypted session was tampered with")
    return pt


def encrypt_data(
    plaintext: str, secret: str | None, algorithm: str = DEFAULT_ALGORITHM
) -> str:
    if not secret:
        return plaintext
    suite = get_suite(algorithm)
    return _encode(plaintext, secret, suite, derive_key(secret, suite.key_size))


def decrypt_data(
    stored: str, secret: str | None, algorithm: str = DEFAULT_ALGORITHM
) -> str:
    if not secret:
        return stored
    suite = get_suite(algorithm)
    return _decode(stored, secret, suite, derive_key(secret, suite.key_size))


class EncryptedEnvelopeCodec:
    """``encrypt_data`` / ``decrypt_data`` bound to one secret and algorithm."""

    __slots__ = ("_secret", "_suite", "_key")

    def __init__(
        self, secret: str | None = None, algorithm: str = DEFAULT_ALGORITHM
    ) -> None:
        self._suite = get_suite(algorithm)
        self._secret = secret or None
        self._key = (
            derive_key(secret, self._suite.key_size) if self._secret else None
        )

    @property
    def enabled(self) -> bool:
        return self._secret is not None

    @property
    def algorithm(self) -> str:
        return self._suite.name

    def encode(self, plaintext: str) -> str:
        if self._secret is None or self._key is None:
            return plaintext
        return _encode(plaintext, self._secret, self._suite, self._key)

    def decode(self, stored: str) -> str:
        if self._secret is None or self._key is None:
            return stored
        return _decode(stored, self._secret, self._suite, self._key)


__all__ = [
    "DEFAULT_ALGORITHM",
    "CIPHER_SUITES",
    "CipherSuite",
    "EncryptedEnvelopeCodec",
    "decrypt_data",
    "derive_key",
    "digest",
    "encrypt_data",
    "get_suite",
    "seal",
    "unseal",
]
