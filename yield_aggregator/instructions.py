"""
Instruction encoding, signing and validation.

Instruction data is an 8-byte discriminator, sha256("global:<name>")[:8],
followed by the arguments in declaration order using the same little-endian
layout as account state.
"""
import struct
import time
import secrets
import msgpack
from typing import Optional

from solders.instruction import AccountMeta, Instruction as SoldersInstruction
from solders.pubkey import Pubkey
from solders.signature import Signature

from yield_aggregator.crypto import (
    Keypair,
    generate_hash,
    instruction_discriminator,
    verify_signature,
)
from yield_aggregator.errors import SchemaMismatch
from yield_aggregator.pda import (
    TOKEN_PROGRAM_ID,
    associated_token_address,
    bridge_request_address,
    global_state_address,
    user_state_address,
    vault_address,
)
from yield_aggregator.state import OracleData, pack_layout, unpack_layout

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

INITIALIZE = "initialize"
DEPOSIT = "deposit"
WITHDRAW = "withdraw"
CLAIM_YIELD = "claim_yield"
UPDATE_YIELD_DATA = "update_yield_data"
SET_AUTHORITY = "set_authority"
INITIATE_CROSS_CHAIN_TRANSFER = "initiate_cross_chain_transfer"
COMPLETE_CROSS_CHAIN_TRANSFER = "complete_cross_chain_transfer"
RECORD_BRIDGE_PROCESSING = "record_bridge_processing"
UPDATE_ORACLE_DATA = "update_oracle_data"

# Argument layouts per instruction
INSTRUCTION_LAYOUTS = {
    INITIALIZE: (),
    DEPOSIT: (('amount', 'u64'),),
    WITHDRAW: (('amount', 'u64'),),
    CLAIM_YIELD: (),
    UPDATE_YIELD_DATA: (
        ('solana_yield', 'u64'),
        ('ethereum_yield', 'u64'),
        ('polygon_yield', 'u64'),
    ),
    SET_AUTHORITY: (('new_authority', 'pubkey'),),
    INITIATE_CROSS_CHAIN_TRANSFER: (
        ('target_chain', 'u8'),
        ('amount', 'u64'),
        ('target_address', 'bytes32'),
        ('sequence', 'u64'),
    ),
    COMPLETE_CROSS_CHAIN_TRANSFER: (
        ('bridge_request_id', 'u64'),
        ('success', 'bool'),
    ),
    RECORD_BRIDGE_PROCESSING: (('bridge_request_id', 'u64'),),
    UPDATE_ORACLE_DATA: (('oracle_data', 'oracle'),),
}

# Instructions only the program authority may sign
AUTHORITY_INSTRUCTIONS = frozenset({
    UPDATE_YIELD_DATA,
    SET_AUTHORITY,
    COMPLETE_CROSS_CHAIN_TRANSFER,
    RECORD_BRIDGE_PROCESSING,
    UPDATE_ORACLE_DATA,
})

_BY_DISCRIMINATOR = {instruction_discriminator(name): name for name in INSTRUCTION_LAYOUTS}


def encode_instruction_data(name: str, args: dict) -> bytes:
    """Discriminator + packed arguments."""
    if name not in INSTRUCTION_LAYOUTS:
        raise ValueError(f"Unknown instruction: {name}")
    out = bytearray(instruction_discriminator(name))
    pack_layout(args, INSTRUCTION_LAYOUTS[name], out)
    return bytes(out)


def decode_instruction_data(data: bytes) -> tuple[str, dict]:
    """Inverse of encode_instruction_data."""
    name = _BY_DISCRIMINATOR.get(bytes(data[:8]))
    if name is None:
        raise SchemaMismatch(f"Unknown instruction discriminator: {bytes(data[:8]).hex()}")
    try:
        args, offset = unpack_layout(INSTRUCTION_LAYOUTS[name], bytes(data), 8)
    except Exception as e:
        raise SchemaMismatch(f"Malformed {name} instruction data: {e}") from e
    if offset != len(data):
        raise SchemaMismatch(f"{name} instruction data has {len(data) - offset} trailing bytes")
    return name, args


def _args_to_wire(name: str, args: dict) -> dict:
    """msgpack-friendly copy of the arguments."""
    wire = {}
    for field_name, kind in INSTRUCTION_LAYOUTS[name]:
        if field_name not in args:
            continue
        value = args[field_name]
        if kind == 'pubkey':
            value = str(value)
        elif kind == 'oracle':
            value = value.to_dict()
        elif kind == 'bool':
            value = bool(value)
        else:
            value = value if isinstance(value, bytes) else int(value)
        wire[field_name] = value
    return wire


def _args_from_wire(name: str, wire: dict) -> dict:
    args = {}
    for field_name, kind in INSTRUCTION_LAYOUTS[name]:
        if field_name not in wire:
            continue
        value = wire[field_name]
        if kind == 'pubkey':
            value = Pubkey.from_string(value)
        elif kind == 'oracle':
            value = OracleData.from_dict(value)
        args[field_name] = value
    return args


class Instruction:
    def __init__(self,
                 program_id: Pubkey,
                 name: str,
                 args: dict,
                 accounts: list[AccountMeta],
                 signer: Pubkey,
                 timestamp: Optional[float] = None,
                 nonce: Optional[int] = None,
                 signature: Optional[bytes] = None):
        if name not in INSTRUCTION_LAYOUTS:
            raise ValueError(f"Unknown instruction: {name}")
        self.program_id = program_id
        self.name = name
        self.args = args
        self.accounts = accounts
        self.signer = signer
        self.timestamp = timestamp or time.time()
        # Distinguishes otherwise identical instructions; the ledger ignores replays
        self.nonce = secrets.randbits(64) if nonce is None else nonce
        self.signature = signature

    @property
    def data(self) -> bytes:
        return encode_instruction_data(self.name, self.args)

    @classmethod
    def from_dict(cls, data: dict):
        """Creates an Instruction object from a dictionary."""
        return cls(
            program_id=Pubkey.from_string(data["program_id"]),
            name=data["name"],
            args=_args_from_wire(data["name"], data["args"]),
            accounts=[
                AccountMeta(Pubkey.from_string(pk), is_signer, is_writable)
                for pk, is_signer, is_writable in data["accounts"]
            ],
            signer=Pubkey.from_string(data["signer"]),
            timestamp=data.get("timestamp"),
            nonce=data.get("nonce"),
            signature=data.get("signature"),
        )

    def to_dict(self, include_signature=True):
        data = {
            "program_id": str(self.program_id),
            "name": self.name,
            "args": _args_to_wire(self.name, self.args),
            "accounts": [
                [str(meta.pubkey), meta.is_signer, meta.is_writable]
                for meta in self.accounts
            ],
            "signer": str(self.signer),
            "timestamp": self.timestamp,
            "nonce": self.nonce,
        }
        if include_signature and self.signature:
            data["signature"] = self.signature
        return data

    def get_signing_data(self) -> bytes:
        """Returns the canonical byte representation for signing."""
        return msgpack.packb(self.to_dict(include_signature=False), use_bin_type=True)

    def sign(self, keypair: Keypair):
        """Signs the instruction."""
        if keypair.pubkey != self.signer:
            raise ValueError(f"Keypair {keypair.pubkey} is not the instruction signer {self.signer}")
        self.signature = keypair.sign(self.get_signing_data())

    def verify_signature(self):
        """Verifies the instruction's signature."""
        if not self.signature:
            return False
        return verify_signature(self.signer, self.signature, self.get_signing_data())

    @property
    def id(self) -> bytes:
        """The unique hash identifier of the instruction."""
        return generate_hash(self.get_signing_data())

    @property
    def signature_str(self) -> str:
        """Base58 signature, the identifier used when confirming."""
        if not self.signature:
            raise ValueError("Instruction is not signed")
        return str(Signature.from_bytes(self.signature))

    def to_solders(self) -> SoldersInstruction:
        """Wire form for building a real transaction."""
        return SoldersInstruction(self.program_id, self.data, self.accounts)

    def validate_basic(self) -> tuple[bool, str]:
        """
        Performs basic validation checks on the instruction.
        Returns (is_valid, error_message)
        """
        if not self.verify_signature():
            return False, "Invalid signature"

        signer_metas = [meta for meta in self.accounts if meta.is_signer]
        if not any(meta.pubkey == self.signer for meta in signer_metas):
            return False, "Signer missing from account list"

        for field_name, _ in INSTRUCTION_LAYOUTS[self.name]:
            if field_name not in self.args:
                return False, f"{self.name} requires '{field_name}'"

        if self.name in (DEPOSIT, WITHDRAW, INITIATE_CROSS_CHAIN_TRANSFER):
            amount = self.args['amount']
            if not isinstance(amount, int) or amount <= 0:
                return False, f"{self.name} amount must be a positive integer"

        try:
            self.data
        except (ValueError, TypeError, KeyError, struct.error) as e:
            return False, f"Arguments do not encode: {e}"

        return True, ""


# ==============================================================================
# ACCOUNT LISTS
# ==============================================================================

def _meta(pubkey: Pubkey, is_signer=False, is_writable=False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer, is_writable)


def instruction_accounts(name: str, program_id: Pubkey, signer: Pubkey,
                         user: Optional[Pubkey] = None,
                         mint: Optional[Pubkey] = None,
                         sequence: Optional[int] = None) -> list[AccountMeta]:
    """
    Ordered account list for an instruction.

    The global state is always first. User-scoped instructions follow it with
    the user state; bridge instructions then carry the request account. The
    signer is the user for position instructions and the authority otherwise.
    """
    global_state, _ = global_state_address(program_id)
    user = user or signer

    if name == INITIALIZE:
        return [
            _meta(global_state, is_writable=True),
            _meta(signer, is_signer=True, is_writable=True),
            _meta(SYSTEM_PROGRAM_ID),
        ]

    if name in (DEPOSIT, WITHDRAW, CLAIM_YIELD):
        if mint is None:
            raise ValueError(f"{name} requires the token mint")
        user_state, _ = user_state_address(user, program_id)
        vault, _ = vault_address(program_id, mint)
        return [
            _meta(global_state, is_writable=True),
            _meta(user_state, is_writable=True),
            _meta(signer, is_signer=True, is_writable=True),
            _meta(associated_token_address(user, mint), is_writable=True),
            _meta(vault, is_writable=True),
            _meta(TOKEN_PROGRAM_ID),
            _meta(SYSTEM_PROGRAM_ID),
        ]

    if name in (UPDATE_YIELD_DATA, SET_AUTHORITY, UPDATE_ORACLE_DATA):
        return [
            _meta(global_state, is_writable=True),
            _meta(signer, is_signer=True),
        ]

    if name in (INITIATE_CROSS_CHAIN_TRANSFER, COMPLETE_CROSS_CHAIN_TRANSFER, RECORD_BRIDGE_PROCESSING):
        if sequence is None:
            raise ValueError(f"{name} requires the bridge request sequence")
        user_state, _ = user_state_address(user, program_id)
        request, _ = bridge_request_address(user, program_id, sequence)
        return [
            _meta(global_state, is_writable=True),
            _meta(user_state, is_writable=True),
            _meta(request, is_writable=True),
            _meta(signer, is_signer=True, is_writable=(name == INITIATE_CROSS_CHAIN_TRANSFER)),
            _meta(SYSTEM_PROGRAM_ID),
        ]

    raise ValueError(f"Unknown instruction: {name}")


def build_instruction(name: str, program_id: Pubkey, signer: Pubkey, args: dict = None,
                      user: Optional[Pubkey] = None,
                      mint: Optional[Pubkey] = None,
                      sequence: Optional[int] = None,
                      timestamp: Optional[float] = None,
                      nonce: Optional[int] = None) -> Instruction:
    """Unsigned instruction with its account list filled in."""
    args = dict(args or {})
    return Instruction(
        program_id=program_id,
        name=name,
        args=args,
        accounts=instruction_accounts(name, program_id, signer, user=user, mint=mint, sequence=sequence),
        signer=signer,
        timestamp=timestamp,
        nonce=nonce,
    )
