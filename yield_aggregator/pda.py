"""
Program-derived address helpers.

Addresses are computed exactly like the on-chain runtime does: the seeds, a
bump byte and the program id are hashed, and the highest bump whose hash is
off the ed25519 curve wins. Derivation is pure; no network access.
"""
import logging
from typing import Optional, Sequence

from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

GLOBAL_STATE_SEED = b"global_state"
USER_STATE_SEED = b"user_state"
VAULT_SEED = b"vault"
BRIDGE_REQUEST_SEED = b"bridge_request"

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

MAX_SEED_LEN = 32
MAX_SEEDS = 16


def _as_pubkey(value) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        return Pubkey(bytes(value))
    return Pubkey.from_string(value)


def derive_address(seeds: Sequence[bytes], program_id) -> tuple[Pubkey, int]:
    """
    Derive the program address for an ordered list of seeds.

    Seeds are positional: reordering them yields a different address.

    Returns:
        (address, bump)
    """
    seeds = [bytes(seed) for seed in seeds]
    # One slot is reserved for the bump seed.
    if len(seeds) >= MAX_SEEDS:
        raise ValueError(f"Too many seeds: {len(seeds)} (max {MAX_SEEDS - 1})")
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise ValueError(f"Seed longer than {MAX_SEED_LEN} bytes: {len(seed)}")

    address, bump = Pubkey.find_program_address(seeds, _as_pubkey(program_id))
    logger.debug(f"Derived {address} (bump {bump}) from {len(seeds)} seeds")
    return address, bump


def global_state_address(program_id) -> tuple[Pubkey, int]:
    return derive_address([GLOBAL_STATE_SEED], program_id)


def user_state_address(user, program_id) -> tuple[Pubkey, int]:
    return derive_address([USER_STATE_SEED, bytes(_as_pubkey(user))], program_id)


def vault_address(program_id, mint=None) -> tuple[Pubkey, int]:
    """Vault address, optionally scoped to a token mint."""
    seeds = [VAULT_SEED]
    if mint is not None:
        seeds.append(bytes(_as_pubkey(mint)))
    return derive_address(seeds, program_id)


def bridge_request_address(user, program_id, sequence: Optional[int] = None) -> tuple[Pubkey, int]:
    """
    Address of a user's bridge request.

    With a sequence number, each of the user's requests gets its own account;
    without one, the single-request layout [tag, user] is used.
    """
    seeds = [BRIDGE_REQUEST_SEED, bytes(_as_pubkey(user))]
    if sequence is not None:
        if sequence < 0 or sequence >= 2**64:
            raise ValueError(f"Bridge request sequence out of range: {sequence}")
        seeds.append(sequence.to_bytes(8, 'little'))
    return derive_address(seeds, program_id)


def associated_token_address(owner, mint) -> Pubkey:
    """The owner's associated token account for a mint."""
    address, _ = Pubkey.find_program_address(
        [bytes(_as_pubkey(owner)), bytes(TOKEN_PROGRAM_ID), bytes(_as_pubkey(mint))],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
