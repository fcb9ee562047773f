"""
Account state schemas and their binary codec.

Every account is encoded as an 8-byte discriminator followed by its fields in
declaration order, little-endian, with no padding:

    u8/bool  1 byte      u64/i64  8 bytes      Pubkey/[u8; 32]  32 bytes

All decoding goes through decode_account(), which validates the
discriminator, field ranges and enum values before returning a typed object.
"""
import struct
import logging
from dataclasses import dataclass, field, fields
from typing import Optional, Union

from solders.pubkey import Pubkey

from yield_aggregator.bridge import BridgeStatus
from yield_aggregator.crypto import account_discriminator
from yield_aggregator.errors import SchemaMismatch

logger = logging.getLogger(__name__)

U64_MAX = 2**64 - 1
I64_MIN = -2**63
I64_MAX = 2**63 - 1
ORACLE_SLOTS = 10
DISCRIMINATOR_LEN = 8

_PUBKEY = 'pubkey'
_BYTES32 = 'bytes32'
_U8 = 'u8'
_BOOL = 'bool'
_U64 = 'u64'
_I64 = 'i64'
_U64_ARRAY = 'u64x10'
_ORACLE = 'oracle'

_SCALARS = {
    _U8: struct.Struct('<B'),
    _BOOL: struct.Struct('<B'),
    _U64: struct.Struct('<Q'),
    _I64: struct.Struct('<q'),
}


def _u64(name, value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= U64_MAX:
        raise ValueError(f"{name} must be a u64, got {value!r}")


def _i64(name, value):
    if isinstance(value, bool) or not isinstance(value, int) or not I64_MIN <= value <= I64_MAX:
        raise ValueError(f"{name} must be an i64, got {value!r}")


def _u8(name, value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 255:
        raise ValueError(f"{name} must be a u8, got {value!r}")


# ==============================================================================
# ACCOUNT TYPES
# ==============================================================================

@dataclass(frozen=True)
class OracleData:
    """Latest cross-chain yield snapshot, overwritten on every update."""
    source_chain: int = 0
    timestamp: int = 0
    yield_rates: tuple = (0,) * ORACLE_SLOTS
    total_value_locked: int = 0
    apy_data: tuple = (0,) * ORACLE_SLOTS

    LAYOUT = (
        ('source_chain', _U8),
        ('timestamp', _I64),
        ('yield_rates', _U64_ARRAY),
        ('total_value_locked', _U64),
        ('apy_data', _U64_ARRAY),
    )

    def __post_init__(self):
        # Shorter rate lists are padded; the account always stores 10 slots.
        for name in ('yield_rates', 'apy_data'):
            values = tuple(getattr(self, name))
            if len(values) > ORACLE_SLOTS:
                raise ValueError(f"{name} supports at most {ORACLE_SLOTS} chains")
            values = values + (0,) * (ORACLE_SLOTS - len(values))
            for i, v in enumerate(values):
                _u64(f"{name}[{i}]", v)
            object.__setattr__(self, name, values)
        _u8('source_chain', self.source_chain)
        _i64('timestamp', self.timestamp)
        _u64('total_value_locked', self.total_value_locked)

    def to_dict(self) -> dict:
        return {
            'source_chain': self.source_chain,
            'timestamp': self.timestamp,
            'yield_rates': list(self.yield_rates),
            'total_value_locked': self.total_value_locked,
            'apy_data': list(self.apy_data),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'OracleData':
        return cls(
            source_chain=data.get('source_chain', 0),
            timestamp=data.get('timestamp', 0),
            yield_rates=tuple(data.get('yield_rates', ())),
            total_value_locked=data.get('total_value_locked', 0),
            apy_data=tuple(data.get('apy_data', ())),
        )


@dataclass(frozen=True)
class GlobalState:
    """Program-wide singleton."""
    authority: Pubkey
    total_deposits: int = 0
    total_yield_earned: int = 0
    solana_yield_rate: int = 0    # APY in basis points (1% = 100)
    ethereum_yield_rate: int = 0
    polygon_yield_rate: int = 0
    last_yield_update: int = 0
    is_initialized: bool = False
    bump: int = 0
    pending_cross_chain_amount: int = 0
    total_cross_chain_deposits: int = 0
    oracle_data: OracleData = field(default_factory=OracleData)
    last_oracle_update: int = 0

    LAYOUT = (
        ('authority', _PUBKEY),
        ('total_deposits', _U64),
        ('total_yield_earned', _U64),
        ('solana_yield_rate', _U64),
        ('ethereum_yield_rate', _U64),
        ('polygon_yield_rate', _U64),
        ('last_yield_update', _I64),
        ('is_initialized', _BOOL),
        ('bump', _U8),
        ('pending_cross_chain_amount', _U64),
        ('total_cross_chain_deposits', _U64),
        ('oracle_data', _ORACLE),
        ('last_oracle_update', _I64),
    )

    def __post_init__(self):
        _validate_layout(self)

    def yield_rate_for(self, chain_id: int) -> int:
        """Basis-point rate for a chain; falls back to the oracle snapshot."""
        fixed = {1: self.solana_yield_rate, 2: self.ethereum_yield_rate, 3: self.polygon_yield_rate}
        if chain_id in fixed and fixed[chain_id]:
            return fixed[chain_id]
        if 1 <= chain_id <= ORACLE_SLOTS:
            return self.oracle_data.yield_rates[chain_id - 1]
        return 0


@dataclass(frozen=True)
class UserState:
    """Per-user position."""
    user: Pubkey
    deposited_amount: int = 0
    total_yield_claimed: int = 0
    last_deposit_timestamp: int = 0
    last_withdrawal_timestamp: int = 0
    last_yield_claim: int = 0
    bump: int = 0
    pending_cross_chain_transfers: int = 0
    cross_chain_deposits: int = 0

    LAYOUT = (
        ('user', _PUBKEY),
        ('deposited_amount', _U64),
        ('total_yield_claimed', _U64),
        ('last_deposit_timestamp', _I64),
        ('last_withdrawal_timestamp', _I64),
        ('last_yield_claim', _I64),
        ('bump', _U8),
        ('pending_cross_chain_transfers', _U64),
        ('cross_chain_deposits', _U64),
    )

    def __post_init__(self):
        _validate_layout(self)

    @property
    def available_amount(self) -> int:
        """Principal that is neither earmarked by open bridge requests nor delivered to another chain."""
        return max(0, self.deposited_amount - self.pending_cross_chain_transfers - self.cross_chain_deposits)


@dataclass(frozen=True)
class BridgeRequest:
    """One cross-chain transfer attempt."""
    user: Pubkey
    target_chain: int
    amount: int
    target_address: bytes
    status: BridgeStatus = BridgeStatus.PENDING
    created_at: int = 0
    completed_at: int = 0
    bump: int = 0

    LAYOUT = (
        ('user', _PUBKEY),
        ('target_chain', _U8),
        ('amount', _U64),
        ('target_address', _BYTES32),
        ('status', _U8),
        ('created_at', _I64),
        ('completed_at', _I64),
        ('bump', _U8),
    )

    def __post_init__(self):
        try:
            object.__setattr__(self, 'status', BridgeStatus(self.status))
        except ValueError:
            raise ValueError(f"status must be one of {[s.value for s in BridgeStatus]}, got {self.status!r}")
        _validate_layout(self)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


AccountType = Union[GlobalState, UserState, BridgeRequest]

ACCOUNT_TYPES = {
    'GlobalState': GlobalState,
    'UserState': UserState,
    'BridgeRequest': BridgeRequest,
}

DISCRIMINATORS = {name: account_discriminator(name) for name in ACCOUNT_TYPES}


# ==============================================================================
# VALIDATION
# ==============================================================================

def _validate_layout(account):
    for name, kind in account.LAYOUT:
        value = getattr(account, name)
        if kind == _PUBKEY:
            if not isinstance(value, Pubkey):
                raise ValueError(f"{name} must be a Pubkey, got {type(value).__name__}")
        elif kind == _BYTES32:
            if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
                raise ValueError(f"{name} must be 32 bytes")
            object.__setattr__(account, name, bytes(value))
        elif kind == _BOOL:
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be a bool, got {value!r}")
        elif kind == _U8:
            _u8(name, value)
        elif kind == _U64:
            _u64(name, value)
        elif kind == _I64:
            _i64(name, value)
        elif kind == _ORACLE:
            if not isinstance(value, OracleData):
                raise ValueError(f"{name} must be OracleData")


# ==============================================================================
# CODEC
# ==============================================================================

def _layout_size(layout) -> int:
    size = 0
    for _, kind in layout:
        if kind in (_PUBKEY, _BYTES32):
            size += 32
        elif kind == _U64_ARRAY:
            size += 8 * ORACLE_SLOTS
        elif kind == _ORACLE:
            size += _layout_size(OracleData.LAYOUT)
        else:
            size += _SCALARS[kind].size
    return size


def account_size(kind) -> int:
    """Encoded size including the discriminator."""
    cls = _resolve(kind)
    return DISCRIMINATOR_LEN + _layout_size(cls.LAYOUT)


def pack_layout(values, layout, out: bytearray):
    """Append fields to out; values is a mapping or an object with attributes."""
    for name, kind in layout:
        value = values[name] if isinstance(values, dict) else getattr(values, name)
        if kind == _PUBKEY:
            out += bytes(value)
        elif kind == _BYTES32:
            out += value
        elif kind == _U64_ARRAY:
            out += struct.pack(f'<{ORACLE_SLOTS}Q', *value)
        elif kind == _ORACLE:
            pack_layout(value, OracleData.LAYOUT, out)
        else:
            out += _SCALARS[kind].pack(int(value))


def unpack_layout(layout, data: bytes, offset: int) -> tuple[dict, int]:
    values = {}
    for name, kind in layout:
        if kind in (_PUBKEY, _BYTES32):
            raw = data[offset:offset + 32]
            values[name] = Pubkey(raw) if kind == _PUBKEY else raw
            offset += 32
        elif kind == _U64_ARRAY:
            values[name] = struct.unpack_from(f'<{ORACLE_SLOTS}Q', data, offset)
            offset += 8 * ORACLE_SLOTS
        elif kind == _ORACLE:
            nested, offset = unpack_layout(OracleData.LAYOUT, data, offset)
            values[name] = OracleData(**nested)
        else:
            (raw,) = _SCALARS[kind].unpack_from(data, offset)
            offset += _SCALARS[kind].size
            if kind == _BOOL:
                if raw not in (0, 1):
                    raise SchemaMismatch(f"{name} is not a valid bool byte: {raw}")
                raw = bool(raw)
            values[name] = raw
    return values, offset


def _resolve(kind) -> type:
    if isinstance(kind, str):
        if kind not in ACCOUNT_TYPES:
            raise ValueError(f"Unknown account kind: {kind}")
        return ACCOUNT_TYPES[kind]
    if kind not in ACCOUNT_TYPES.values():
        raise ValueError(f"Unknown account kind: {kind!r}")
    return kind


def encode_account(account: AccountType) -> bytes:
    """Serialize an account with its discriminator prefix."""
    cls = type(account)
    out = bytearray(DISCRIMINATORS[cls.__name__])
    pack_layout(account, cls.LAYOUT, out)
    return bytes(out)


def decode_account(data: bytes, kind, require_initialized: bool = False) -> AccountType:
    """
    Decode and validate an account buffer.

    Args:
        data: Raw account bytes (trailing allocation padding is ignored)
        kind: Expected account class or its name
        require_initialized: For GlobalState, reject accounts that have not
            been through initialize

    Raises:
        SchemaMismatch: on a wrong discriminator, short buffer or any field
            outside its allowed range
    """
    cls = _resolve(kind)
    name = cls.__name__
    if data is None:
        raise SchemaMismatch(f"{name} account does not exist")

    data = bytes(data)
    if data[:DISCRIMINATOR_LEN] != DISCRIMINATORS[name]:
        raise SchemaMismatch(
            f"Discriminator mismatch: expected {name} "
            f"({DISCRIMINATORS[name].hex()}), got {data[:DISCRIMINATOR_LEN].hex()}"
        )

    expected = account_size(cls)
    if len(data) < expected:
        raise SchemaMismatch(f"{name} buffer too short: {len(data)} < {expected} bytes")

    values, _ = unpack_layout(cls.LAYOUT, data, DISCRIMINATOR_LEN)
    try:
        account = cls(**values)
    except ValueError as e:
        raise SchemaMismatch(f"Invalid {name}: {e}") from e

    if require_initialized and cls is GlobalState and not account.is_initialized:
        raise SchemaMismatch("GlobalState is not initialized")

    logger.debug(f"Decoded {name} ({len(data)} bytes)")
    return account


def account_kind(data: bytes) -> Optional[str]:
    """Name of the account kind a buffer claims to be, if any."""
    prefix = bytes(data[:DISCRIMINATOR_LEN])
    for name, disc in DISCRIMINATORS.items():
        if disc == prefix:
            return name
    return None


def account_to_dict(account: AccountType) -> dict:
    """JSON-friendly view: addresses as base58, byte arrays as hex."""
    result = {}
    for f in fields(account):
        value = getattr(account, f.name)
        if isinstance(value, Pubkey):
            value = str(value)
        elif isinstance(value, bytes):
            value = value.hex()
        elif isinstance(value, OracleData):
            value = value.to_dict()
        elif isinstance(value, BridgeStatus):
            value = value.name
        result[f.name] = value
    return result
