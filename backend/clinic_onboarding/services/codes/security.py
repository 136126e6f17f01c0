"""
Code Security Primitives

- random_token: CSPRNG tokens drawn uniformly from an alphabet
- CodeHasher: deterministic keyed slow hash used as the at-rest lookup key
- constant_time_equals: comparison independent of mismatch position
- mask_code: the only form of a code allowed in logs and audit details
- FieldCipher: AES-256-GCM for fields that must stay reversible

Nothing in this module logs its inputs.
"""
import base64
import hashlib
import hmac
import secrets
import string
from typing import Optional, Union

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes


BASE36_ALPHABET = string.ascii_uppercase + string.digits


def random_token(length: int, alphabet: str = BASE36_ALPHABET) -> str:
    """Generate `length` characters, each chosen uniformly via `secrets`."""
    if length < 1:
        raise ValueError("length must be positive")
    if not alphabet:
        raise ValueError("alphabet must not be empty")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def constant_time_equals(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def mask_code(code: Optional[str], visible: int = 4) -> str:
    """Replace all but the last `visible` characters with '*'."""
    if not code:
        return ""
    if len(code) <= visible:
        return "*" * len(code)
    return "*" * (len(code) - visible) + code[-visible:]


class CodeHasher:
    """
    PBKDF2-HMAC-SHA256 keyed by a server-side secret.

    The secret acts as a global salt so equal codes hash equally (the hash
    is the lookup key), while a leaked hash table cannot be brute-forced
    without the secret and costs `iterations` rounds per guess even with it.
    """

    def __init__(self, secret: Union[str, bytes], iterations: int = 100_000):
        if not secret:
            raise ValueError("A code hash secret is required")
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self._key = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.iterations = iterations

    def hash(self, code: str) -> str:
        digest = hashlib.pbkdf2_hmac(
            "sha256", code.encode("utf-8"), self._key, self.iterations
        )
        return digest.hex()

    def verify(self, code: str, code_hash: str) -> bool:
        return constant_time_equals(self.hash(code), code_hash)


class FieldCipher:
    """
    Authenticated encryption for reversible sensitive fields.

    Token layout (base64): nonce(12) | tag(16) | ciphertext. A fresh random
    nonce is drawn for every encryption.
    """

    NONCE_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, key: Union[str, bytes]):
        if not key:
            raise ValueError("An encryption key is required")
        raw = key.encode("utf-8") if isinstance(key, str) else key
        # Any key material is stretched to the 32 bytes AES-256 needs
        self._key = raw if len(raw) == 32 else hashlib.sha256(raw).digest()

    def encrypt(self, plaintext: str) -> str:
        nonce = get_random_bytes(self.NONCE_SIZE)
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Raises ValueError when the token was tampered with or the key is wrong."""
        blob = base64.b64decode(token)
        if len(blob) < self.NONCE_SIZE + self.TAG_SIZE:
            raise ValueError("Ciphertext too short")
        nonce = blob[:self.NONCE_SIZE]
        tag = blob[self.NONCE_SIZE:self.NONCE_SIZE + self.TAG_SIZE]
        ciphertext = blob[self.NONCE_SIZE + self.TAG_SIZE:]
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag).decode("utf-8")
