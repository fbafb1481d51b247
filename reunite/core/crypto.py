"""
Envelope encryption for biometric vectors and index segments.

Vectors are encrypted with AES-256-GCM under per-record keys. Key references
are resolved by the key-management collaborator; LocalKeyManager is the
in-process stand-in used for development and tests.
"""

import os
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from . import config
from .errors import IntegrityFault

NONCE_SIZE = 12
TAG_SIZE = 16


class IKeyManager(ABC):
    """Boundary to the key-management collaborator."""

    @abstractmethod
    def new_key_ref(self) -> str:
        """Allocate a fresh key reference for a new record."""
        pass

    @abstractmethod
    def resolve(self, key_ref: str) -> bytes:
        """Return the 32-byte data key for a reference."""
        pass


class LocalKeyManager(IKeyManager):
    """Derives per-record keys from a master secret.

    A key-encryption key is derived per active reference with PBKDF2, then
    each record key is expanded from it with HKDF so resolving stays cheap.
    """

    def __init__(self, master_secret: str = None, active_ref: str = None):
        self._master_secret = master_secret or config.KEY_MASTER_SECRET
        self.active_ref = active_ref or config.KEY_ACTIVE_REF
        self._kek_cache: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def new_key_ref(self) -> str:
        return f"{self.active_ref}/{uuid.uuid4().hex}"

    def resolve(self, key_ref: str) -> bytes:
        kek_ref, _, _ = key_ref.partition("/")
        kek = self._key_encryption_key(kek_ref)
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=key_ref.encode(),
        )
        return hkdf.derive(kek)

    def _key_encryption_key(self, kek_ref: str) -> bytes:
        with self._lock:
            if kek_ref not in self._kek_cache:
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=32,
                    salt=kek_ref.encode(),
                    iterations=100000,
                )
                self._kek_cache[kek_ref] = kdf.derive(self._master_secret.encode())
            return self._kek_cache[kek_ref]


def encrypt_data(data: bytes, key: bytes, associated_data: bytes = b"") -> bytes:
    """Encrypt data using AES-256-GCM, returning nonce + tag + ciphertext."""
    nonce = os.urandom(NONCE_SIZE)
    cipher = Cipher(algorithms.AES(key), modes.GCM(nonce))
    encryptor = cipher.encryptor()
    if associated_data:
        encryptor.authenticate_additional_data(associated_data)

    ciphertext = encryptor.update(data) + encryptor.finalize()
    return nonce + encryptor.tag + ciphertext


def decrypt_data(encrypted_data: bytes, key: bytes, associated_data: bytes = b"") -> bytes:
    """Decrypt AES-256-GCM data; any tampering raises IntegrityFault."""
    if len(encrypted_data) < NONCE_SIZE + TAG_SIZE:
        raise IntegrityFault("Encrypted data too short")

    nonce = encrypted_data[:NONCE_SIZE]
    tag = encrypted_data[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = encrypted_data[NONCE_SIZE + TAG_SIZE:]

    cipher = Cipher(algorithms.AES(key), modes.GCM(nonce, tag))
    decryptor = cipher.decryptor()
    if associated_data:
        decryptor.authenticate_additional_data(associated_data)
    try:
        return decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag as e:
        raise IntegrityFault("Decryption failed: ciphertext or key mismatch") from e


def encrypt_vector(vector: np.ndarray, key: bytes, associated_data: bytes = b"") -> bytes:
    return encrypt_data(np.asarray(vector, dtype=np.float32).tobytes(), key, associated_data)


def decrypt_vector(blob: bytes, key: bytes, dimension: int, associated_data: bytes = b"") -> np.ndarray:
    raw = decrypt_data(blob, key, associated_data)
    vector = np.frombuffer(raw, dtype=np.float32)
    if vector.shape[0] != dimension:
        raise IntegrityFault(f"Decrypted vector has dimension {vector.shape[0]}, expected {dimension}")
    vector.setflags(write=False)
    return vector
