"""
Core cryptographic functions for the aggregator client.
"""
import hashlib
import nacl.signing
import nacl.exceptions
from Crypto.Hash import keccak
from solders.pubkey import Pubkey


class Keypair:
    """An ed25519 signing key whose public half is a program address."""

    def __init__(self, signing_key: nacl.signing.SigningKey):
        self.signing_key = signing_key
        self.verify_key = signing_key.verify_key
        self.pubkey = Pubkey(bytes(self.verify_key))

    @classmethod
    def generate(cls) -> 'Keypair':
        return cls(nacl.signing.SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> 'Keypair':
        """Deterministic keypair from a 32-byte seed."""
        return cls(nacl.signing.SigningKey(seed))

    def sign(self, data: bytes) -> bytes:
        """Signs byte data, returning the detached 64-byte signature."""
        return self.signing_key.sign(data).signature

    def __repr__(self) -> str:
        return f"Keypair(pubkey={self.pubkey})"


def verify_signature(pubkey: Pubkey, signature: bytes, data: bytes) -> bool:
    """Verifies a detached ed25519 signature."""
    try:
        nacl.signing.VerifyKey(bytes(pubkey)).verify(data, signature)
        return True
    except (nacl.exceptions.BadSignatureError, ValueError):
        # Catch both cryptographic failures and format/length errors
        return False


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def account_discriminator(name: str) -> bytes:
    """8-byte tag prefixing every encoded account of the given kind."""
    return sha256(f"account:{name}".encode('utf-8'))[:8]


def instruction_discriminator(name: str) -> bytes:
    """8-byte tag prefixing the data of the named instruction."""
    return sha256(f"global:{name}".encode('utf-8'))[:8]


def to_checksum_address(address: bytes) -> str:
    """EIP-55 mixed-case hex encoding of a 20-byte EVM address."""
    if len(address) != 20:
        raise ValueError(f"EVM address must be 20 bytes, got {len(address)}")
    lower = address.hex()
    digest = generate_hash(lower.encode('ascii')).hex()
    return '0x' + ''.join(
        c.upper() if c.isalpha() and int(digest[i], 16) >= 8 else c
        for i, c in enumerate(lower)
    )
