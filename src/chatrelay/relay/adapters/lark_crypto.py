"""Lark event callback decryption and signature checks."""

import base64
import hashlib
import hmac
import json
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from chatrelay.relay.exceptions import WebhookVerificationFailure


def decrypt_event(encrypted: str, encrypt_key: str) -> dict[str, Any]:
    """Decrypt an ``{"encrypt": ...}`` callback body.

    Lark encrypts with AES-256-CBC. The key is the SHA-256 digest of the
    configured encrypt key and the first 16 bytes of the payload are the IV.

    Raises:
        WebhookVerificationFailure: If the payload cannot be decrypted
    """
    key = hashlib.sha256(encrypt_key.encode("utf-8")).digest()
    try:
        raw = base64.b64decode(encrypted)
        iv, ciphertext = raw[:16], raw[16:]

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return json.loads(plaintext.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookVerificationFailure(f"Cannot decrypt Lark event: {e}") from e


def encrypt_event(payload: dict[str, Any], encrypt_key: str, iv: bytes) -> str:
    """Encrypt a callback body the way Lark does."""
    key = hashlib.sha256(encrypt_key.encode("utf-8")).digest()
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + ciphertext).decode("ascii")


def verify_signature(
    timestamp: str,
    nonce: str,
    encrypt_key: str,
    body: bytes,
    signature: str,
) -> bool:
    """Check the ``X-Lark-Signature`` header of an encrypted callback."""
    content = (timestamp + nonce + encrypt_key).encode("utf-8") + body
    expected = hashlib.sha256(content).hexdigest()
    return hmac.compare_digest(expected, signature)
