"""
BIP32 HD key derivation for funding accounts.
"""

from __future__ import annotations

import hashlib
import hmac
import unicodedata

from coincurve import PrivateKey, PublicKey

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000


class HDKey:
    """
    Hierarchical Deterministic key over secp256k1.
    Only private derivation is supported; every node carries its private key.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth

    def __repr__(self) -> str:
        return f"HDKey(depth={self.depth})"

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/44'/60'/0'/0/0")
        ' or h indicates hardened derivation
        """
        key = self
        for index in parse_path(path):
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        if index >= HARDENED_OFFSET:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self._public_key.format(compressed=True) + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset_int = int.from_bytes(hmac_result[:32], "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        child_private_key = PrivateKey(child_key_int.to_bytes(32, "big"))
        return HDKey(child_private_key, hmac_result[32:], depth=self.depth + 1)

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)


def parse_path(path: str) -> list[int]:
    """
    Parse a derivation path into child indexes (hardened ones offset by 2^31).

    Raises:
        ValueError: If the path does not start with 'm' or a component is not an index
    """
    parts = path.strip().split("/")
    if parts[0] != "m":
        raise ValueError("Path must start with 'm'")

    indexes = []
    for part in parts[1:]:
        if not part:
            raise ValueError(f"Empty path component in {path!r}")
        hardened = part.endswith("'") or part.endswith("h")
        index_str = part[:-1] if hardened else part
        if not index_str.isdigit():
            raise ValueError(f"Invalid path component {part!r}")
        index = int(index_str)
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Path component out of range: {part!r}")
        indexes.append(index + HARDENED_OFFSET if hardened else index)
    return indexes


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert BIP39 mnemonic (and optional passphrase) to a 64-byte seed."""
    mnemonic_bytes = unicodedata.normalize("NFKD", " ".join(mnemonic.split())).encode("utf-8")
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)
