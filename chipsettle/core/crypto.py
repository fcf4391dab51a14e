"""
chipsettle/core/crypto.py

Ed25519 signing for settlement proofs.

Key contracts:
    public_key_hex          : @property, 64-char lowercase hex
    sign(data)              : bytes → base64url str, no padding
    verify_detached(...)    : @staticmethod, needs only the signer's public key hex

A proof carries the signer's public key next to its signature, so anyone
holding only the exported proof can check it with verify_detached().
"""

import base64
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)


class Ed25519KeyManager:
    """
    Holds one proof-signing key.

        Ed25519KeyManager.generate()                        → new random key
        Ed25519KeyManager.from_file(path)                   → load PEM private key
        Ed25519KeyManager.verify_detached(data, sig, hex)   → bool

        key.public_key_hex          → 64-char lowercase hex
        key.sign(data: bytes)       → base64url str
        key.save(path)              → write PEM private key
    """

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key:    Ed25519PrivateKey = private_key
        self._public_key:     Ed25519PublicKey  = private_key.public_key()
        self._public_key_hex: str = (
            self._public_key
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
            .hex()
        )

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def generate(cls) -> "Ed25519KeyManager":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_file(cls, path: Path) -> "Ed25519KeyManager":
        """
        Load a PEM private key.
        Raises FileNotFoundError if missing, ValueError if not Ed25519.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Key file not found: {path}")
        private_key = load_pem_private_key(path.read_bytes(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ValueError(f"Key file {path} does not contain an Ed25519 private key")
        return cls(private_key)

    @classmethod
    def load_or_create(cls, path: Path) -> "Ed25519KeyManager":
        path = Path(path)
        if path.exists():
            return cls.from_file(path)
        key = cls.generate()
        key.save(path)
        return key

    # ── Public Key ────────────────────────────────────────────

    @property
    def public_key_hex(self) -> str:
        return self._public_key_hex

    # ── Signing ───────────────────────────────────────────────

    def sign(self, data: bytes) -> str:
        """Sign canonical bytes. Returns 86-char base64url, no '=' padding."""
        raw_sig = self._private_key.sign(data)
        return base64.urlsafe_b64encode(raw_sig).rstrip(b"=").decode("ascii")

    @staticmethod
    def verify_detached(
        data:           bytes,
        signature_b64:  str,
        public_key_hex: str,
    ) -> bool:
        """
        Verify a signature using only the public key hex.

        Returns False for any failure (wrong key, bad encoding, tampered
        data). Never raises.
        """
        if not isinstance(public_key_hex, str) or len(public_key_hex) != 64:
            return False
        if not isinstance(signature_b64, str):
            return False
        try:
            pub = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
            padded_sig = signature_b64 + "=" * (-len(signature_b64) % 4)
            raw_sig = base64.urlsafe_b64decode(padded_sig)
        except ValueError:
            return False
        if len(raw_sig) != 64:
            return False
        try:
            pub.verify(raw_sig, data)
        except InvalidSignature:
            return False
        return True

    # ── Persistence ───────────────────────────────────────────

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        pem = self._private_key.private_bytes(
            encoding=             Encoding.PEM,
            format=               PrivateFormat.PKCS8,
            encryption_algorithm= NoEncryption(),
        )
        path.write_bytes(pem)

    def __repr__(self) -> str:
        return f"Ed25519KeyManager(public_key_hex={self._public_key_hex[:16]}...)"
