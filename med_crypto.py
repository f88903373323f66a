# med_crypto.py
# AES-256-GCM helpers for the at-rest encrypted database and its key file.

import os
import uuid
from pathlib import Path
from threading import RLock
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from med_log import logger

KEY_SIZE = 32
NONCE_SIZE = 12

_KEY_LOCK = RLock()


def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + aes.encrypt(nonce, data, None)


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < NONCE_SIZE:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:NONCE_SIZE], data[NONCE_SIZE:]
    return aes.decrypt(nonce, ct, None)


def load_key(key_path: Path) -> Optional[bytes]:
    if not key_path.exists():
        return None
    d = key_path.read_bytes()
    return d[:KEY_SIZE] if len(d) >= KEY_SIZE else None


def get_or_create_key(key_path: Path) -> bytes:
    """Return the database key, creating and storing a new one on first launch."""
    with _KEY_LOCK:
        k = load_key(key_path)
        if k:
            return k
        key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        atomic_write_bytes(key_path, key)
        logger.info(f"key stored: {key_path.name}")
        return key
