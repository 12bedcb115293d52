# src/simchain/crypto/sig.py
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

Json = Dict[str, Any]

ED25519_KEY_LEN = 32


def decode_key_material(s: str) -> bytes:
    """Keys and signatures travel as hex, base64 or base64url text."""
    text = str(s or "").strip()
    if not text:
        raise ValueError("empty key material")
    try:
        return bytes.fromhex(text)
    except ValueError:
        pass
    std = text.replace("-", "+").replace("_", "/")
    try:
        return base64.b64decode(std + "=" * (-len(std) % 4), validate=True)
    except binascii.Error as e:
        raise ValueError("key material is neither hex nor base64") from e


def load_public_key(pubkey: str) -> Ed25519PublicKey:
    raw = decode_key_material(pubkey)
    if len(raw) != ED25519_KEY_LEN:
        raise ValueError(f"ed25519 public key must be {ED25519_KEY_LEN} bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def is_valid_ed25519_pubkey(pubkey: str) -> bool:
    try:
        load_public_key(pubkey)
    except ValueError:
        return False
    return True


def canonical_msg_bytes(*, msg_type: str, payload: Json) -> bytes:
    """Signing bytes for a routed message: sorted compact JSON of {msg_type, payload}."""
    body = {"msg_type": str(msg_type), "payload": dict(payload) if isinstance(payload, dict) else {}}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_ed25519_signature(*, message: bytes, sig: str, pubkey: str) -> bool:
    try:
        load_public_key(pubkey).verify(decode_key_material(sig), message)
    except (InvalidSignature, ValueError):
        return False
    return True


def sign_ed25519(*, message: bytes, privkey: str, encoding: str = "hex") -> str:
    """Sign with a 32-byte ed25519 seed. encoding is "hex" or "b64"."""
    seed = decode_key_material(privkey)
    if len(seed) != ED25519_KEY_LEN:
        raise ValueError("ed25519 privkey must be a 32-byte seed")
    sig = Ed25519PrivateKey.from_private_bytes(seed).sign(message)
    if encoding == "hex":
        return sig.hex()
    if encoding in ("b64", "base64"):
        return base64.b64encode(sig).decode("ascii")
    raise ValueError(f"unsupported signature encoding: {encoding}")
