"""
Key Manager - Quản lý Cryptographic Keys cho Attendance Credential Core

Supports:
- Ed25519: Cho DID signing (W3C recommended, default)
- secp256k1: Cho Ethereum compatibility
"""

import base64
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature

from eth_account import Account
from eth_account.messages import encode_defunct


ED25519 = "Ed25519VerificationKey2020"
SECP256K1 = "EcdsaSecp256k1VerificationKey2019"

PROOF_TYPES = {
    ED25519: "Ed25519Signature2020",
    SECP256K1: "EcdsaSecp256k1Signature2019",
}

# Short names accepted by configuration
KEY_TYPE_ALIASES = {
    "Ed25519": ED25519,
    "secp256k1": SECP256K1,
}


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class KeyPair:
    """Represents a cryptographic key pair"""
    key_type: str  # Ed25519VerificationKey2020, EcdsaSecp256k1VerificationKey2019
    public_key: bytes  # Raw Ed25519 key or 20-byte Ethereum address
    private_key: Optional[str] = field(default=None, repr=False)  # Only stored locally, never shared
    key_id: str = ""
    created_at: str = field(default_factory=_utcnow)

    @property
    def ethereum_address(self) -> Optional[str]:
        if self.key_type != SECP256K1:
            return None
        return Account.from_key(self.private_key).address if self.private_key \
            else "0x" + self.public_key.hex()

    def public_only(self) -> "KeyPair":
        return replace(self, private_key=None)


class KeyManager:
    """
    Holds private keys and exposes the sign/verify primitive

    The rest of the core only ever sees key ids and public key bytes;
    private material never leaves this class.
    """

    def __init__(self):
        self._keys: Dict[str, KeyPair] = {}
        self._lock = threading.Lock()

    # ==================== KEY GENERATION ====================

    def generate_keypair(self, key_type: str = ED25519) -> KeyPair:
        """
        Generate an unbound key pair

        The caller derives an identifier from ``public_key`` and then
        calls ``store`` to bind the pair to a key id.
        """
        key_type = KEY_TYPE_ALIASES.get(key_type, key_type)
        if key_type == ED25519:
            return self._generate_ed25519()
        if key_type == SECP256K1:
            return self._generate_secp256k1()
        raise ValueError(f"Unsupported key type: {key_type}")

    def _generate_ed25519(self) -> KeyPair:
        private_key = ed25519.Ed25519PrivateKey.generate()

        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

        return KeyPair(
            key_type=ED25519,
            public_key=public_bytes,
            private_key=b64url_encode(private_bytes),
        )

    def _generate_secp256k1(self) -> KeyPair:
        return self.from_ethereum_key(Account.create().key.hex())

    def from_ethereum_key(self, private_key: str) -> KeyPair:
        """
        Create KeyPair from existing Ethereum private key

        Args:
            private_key: Ethereum private key (hex string, 0x prefix optional)
        """
        account = Account.from_key(private_key)
        return KeyPair(
            key_type=SECP256K1,
            public_key=bytes.fromhex(account.address[2:]),
            private_key=account.key.hex(),
        )

    def store(self, key_id: str, keypair: KeyPair) -> KeyPair:
        """Bind a key pair to ``key_id`` and keep it for signing"""
        bound = replace(keypair, key_id=key_id)
        with self._lock:
            if key_id in self._keys:
                raise ValueError(f"Key id already in use: {key_id}")
            self._keys[key_id] = bound
        return bound

    # ==================== SIGNING ====================

    def sign(self, key_id: str, message: bytes) -> str:
        """
        Sign message with the stored key

        Returns:
            Base64url signature for Ed25519, hex signature for secp256k1
        """
        keypair = self._keys.get(key_id)
        if not keypair:
            raise ValueError(f"Key not found: {key_id}")
        if not keypair.private_key:
            raise ValueError("Private key not available for signing")

        if keypair.key_type == ED25519:
            private_bytes = b64url_decode(keypair.private_key)
            private_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_bytes)
            return b64url_encode(private_key.sign(message))

        signed = Account.sign_message(
            encode_defunct(primitive=message), private_key=keypair.private_key
        )
        return bytes(signed.signature).hex()

    # ==================== VERIFICATION ====================

    def verify(self, key_type: str, public_key: bytes, message: bytes, signature: str) -> bool:
        """
        Verify a signature produced by ``sign``

        Malformed keys or signatures count as a failed verification.
        """
        if key_type == ED25519:
            return self._verify_ed25519(public_key, message, signature)
        if key_type == SECP256K1:
            return self._verify_secp256k1(public_key, message, signature)
        return False

    def _verify_ed25519(self, public_key: bytes, message: bytes, signature: str) -> bool:
        try:
            pub_key = ed25519.Ed25519PublicKey.from_public_bytes(public_key)
            pub_key.verify(b64url_decode(signature), message)
            return True
        except (CryptoInvalidSignature, ValueError, TypeError):
            return False

    def _verify_secp256k1(self, public_key: bytes, message: bytes, signature: str) -> bool:
        try:
            sig_bytes = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
            recovered = Account.recover_message(
                encode_defunct(primitive=message), signature=sig_bytes
            )
            return bytes.fromhex(recovered[2:]) == public_key
        except Exception:
            # eth_keys raises several unrelated types for bad signatures
            return False

    # ==================== KEY MANAGEMENT ====================

    def get_key(self, key_id: str) -> Optional[KeyPair]:
        """Get public half of a key by ID"""
        keypair = self._keys.get(key_id)
        return keypair.public_only() if keypair else None

    def has_private_key(self, key_id: str) -> bool:
        keypair = self._keys.get(key_id)
        return bool(keypair and keypair.private_key)

    def list_keys(self) -> list:
        """List all key IDs"""
        return list(self._keys.keys())
