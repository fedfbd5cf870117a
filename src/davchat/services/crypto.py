# src/davchat/services/crypto.py
"""Symmetric encryption of message payloads and attachment blobs."""

from __future__ import annotations

import hmac as _hmac
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from davchat.core.errors import DecryptionError

IV_LENGTH_BYTES = 16
BLOCK_SIZE_BITS = 128
MAC_LENGTH_BYTES = 32

# scrypt cost parameters; these match the defaults of Node's scryptSync so
# existing JavaScript clients derive the same key.
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


@dataclass(frozen=True)
class CipherSuite:
    """Parameters of a supported ``cipher_algorithm`` identifier."""

    name: str
    key_bytes: int
    mac: bool = False

    @property
    def derived_key_bytes(self) -> int:
        """Return how many bytes the KDF must produce for this suite."""
        return self.key_bytes * 2 if self.mac else self.key_bytes


CIPHER_SUITES: dict[str, CipherSuite] = {
    suite.name: suite
    for suite in (
        CipherSuite("aes-128-cbc", 16),
        CipherSuite("aes-192-cbc", 24),
        CipherSuite("aes-256-cbc", 32),
        CipherSuite("aes-256-cbc-hmac-sha256", 32, mac=True),
    )
}


def get_cipher_suite(name: str) -> CipherSuite:
    """Look up a cipher suite by identifier.

    Raises:
        ValueError: If the identifier is not supported
    """
    try:
        return CIPHER_SUITES[name.strip().lower()]
    except KeyError as err:
        supported = ", ".join(sorted(CIPHER_SUITES))
        raise ValueError(f"Unsupported cipher algorithm {name!r} (supported: {supported})") from err


def derive_key(secret: str | bytes, salt: str | bytes, length: int = 32) -> bytes:
    """Derive a symmetric key from a shared secret with scrypt.

    The derivation is deterministic: any client holding the same secret and
    salt obtains the same key and can decrypt every other client's messages.

    Args:
        secret: Shared secret configured on every client
        salt: Shared salt
        length: Number of key bytes to produce

    Returns:
        Raw key bytes
    """
    secret_bytes = secret.encode() if isinstance(secret, str) else secret
    salt_bytes = salt.encode() if isinstance(salt, str) else salt
    kdf = Scrypt(salt=salt_bytes, length=length, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret_bytes)


class CryptoCodec:
    """AES-CBC codec with a key derived once for the lifetime of the process.

    Plain CBC suites rely on PKCS7 padding validation to reject most corrupted
    ciphertexts. The ``aes-256-cbc-hmac-sha256`` suite adds an
    encrypt-then-MAC tag so any modification is detected.
    """

    def __init__(self, secret: str | bytes, salt: str | bytes, algorithm: str = "aes-256-cbc") -> None:
        self.suite = get_cipher_suite(algorithm)
        material = derive_key(secret, salt, self.suite.derived_key_bytes)
        self._enc_key = material[: self.suite.key_bytes]
        self._mac_key = material[self.suite.key_bytes :] if self.suite.mac else b""

    @classmethod
    def from_settings(cls, settings) -> CryptoCodec:
        """Build a codec from ``Settings``."""
        return cls(
            settings.encryption_secret,
            settings.encryption_salt,
            settings.cipher_algorithm,
        )

    @property
    def algorithm(self) -> str:
        return self.suite.name

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._enc_key), modes.CBC(iv))

    def _tag(self, iv: bytes, ciphertext: bytes) -> bytes:
        mac = crypto_hmac.HMAC(self._mac_key, hashes.SHA256())
        mac.update(iv + ciphertext)
        return mac.finalize()

    def encrypt(self, plaintext: bytes) -> tuple[bytes, bytes]:
        """Encrypt ``plaintext`` under a fresh random IV.

        Returns:
            Tuple of (iv, ciphertext); for MAC suites the tag is appended to
            the ciphertext
        """
        iv = os.urandom(IV_LENGTH_BYTES)
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = self._cipher(iv).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        if self.suite.mac:
            ciphertext += self._tag(iv, ciphertext)
        return iv, ciphertext

    def decrypt(self, iv: bytes, ciphertext: bytes) -> bytes:
        """Decrypt ``ciphertext`` produced by :meth:`encrypt`.

        Raises:
            DecryptionError: On a malformed IV or ciphertext, a MAC mismatch,
                or invalid padding (wrong key or corrupted data)
        """
        if len(iv) != IV_LENGTH_BYTES:
            raise DecryptionError(f"IV must be {IV_LENGTH_BYTES} bytes, got {len(iv)}")

        if self.suite.mac:
            if len(ciphertext) < MAC_LENGTH_BYTES:
                raise DecryptionError("Ciphertext too short to carry an authentication tag")
            ciphertext, tag = ciphertext[:-MAC_LENGTH_BYTES], ciphertext[-MAC_LENGTH_BYTES:]
            if not _hmac.compare_digest(tag, self._tag(iv, ciphertext)):
                raise DecryptionError("Authentication tag mismatch")

        if not ciphertext or len(ciphertext) % (BLOCK_SIZE_BITS // 8):
            raise DecryptionError("Ciphertext is not a whole number of cipher blocks")

        decryptor = self._cipher(iv).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as err:
            raise DecryptionError("Invalid padding (wrong key or corrupted data)") from err

    def encrypt_text(self, text: str) -> tuple[bytes, bytes]:
        """Encrypt a UTF-8 string."""
        return self.encrypt(text.encode("utf-8"))

    def decrypt_text(self, iv: bytes, ciphertext: bytes) -> str:
        """Decrypt to a UTF-8 string; undecodable output is a decryption failure."""
        plaintext = self.decrypt(iv, ciphertext)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionError("Decrypted payload is not valid UTF-8") from err

    def encrypt_blob(self, data: bytes) -> bytes:
        """Encrypt ``data`` into a self-framed ``iv || ciphertext`` blob."""
        iv, ciphertext = self.encrypt(data)
        return iv + ciphertext

    def decrypt_blob(self, blob: bytes) -> bytes:
        """Decrypt a blob produced by :meth:`encrypt_blob`."""
        if len(blob) <= IV_LENGTH_BYTES:
            raise DecryptionError("Encrypted blob is too short")
        return self.decrypt(blob[:IV_LENGTH_BYTES], blob[IV_LENGTH_BYTES:])
