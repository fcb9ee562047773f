"""
Supported target chains and target-address parsing.

Chain ids are an open enumeration: a deployment registers the chains its
bridge serves and the client validates membership against that registry.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from solders.pubkey import Pubkey

from yield_aggregator.crypto import to_checksum_address
from yield_aggregator.errors import UnsupportedChain

logger = logging.getLogger(__name__)

SOLANA_FORMAT = 'solana'
EVM_FORMAT = 'evm'
TARGET_ADDRESS_LEN = 32

# Chain the program itself runs on
HOME_CHAIN_ID = 1


@dataclass(frozen=True)
class ChainInfo:
    id: int
    name: str
    symbol: str
    address_format: str = EVM_FORMAT

    def __post_init__(self):
        if not 1 <= self.id <= 255:
            raise ValueError(f"Chain id must fit in a u8 and be positive, got {self.id}")
        if self.address_format not in (SOLANA_FORMAT, EVM_FORMAT):
            raise ValueError(f"Unknown address format: {self.address_format}")

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'symbol': self.symbol,
            'address_format': self.address_format,
        }


DEFAULT_CHAINS = (
    ChainInfo(1, 'Solana', 'SOL', SOLANA_FORMAT),
    ChainInfo(2, 'Ethereum', 'ETH'),
    ChainInfo(3, 'Polygon', 'MATIC'),
    ChainInfo(4, 'BNB Chain', 'BNB'),
    ChainInfo(5, 'Arbitrum', 'ARB'),
    ChainInfo(6, 'Optimism', 'OP'),
    ChainInfo(7, 'Avalanche', 'AVAX'),
    ChainInfo(8, 'Fantom', 'FTM'),
)


class ChainRegistry:
    """Membership check and metadata for target chains."""

    def __init__(self, chains: Iterable[ChainInfo] = DEFAULT_CHAINS):
        self._chains = {}
        for chain in chains:
            self.register(chain)

    def register(self, chain: ChainInfo):
        if chain.id in self._chains:
            raise ValueError(f"Chain id {chain.id} already registered as {self._chains[chain.id].name}")
        self._chains[chain.id] = chain

    def get(self, chain_id: int) -> Optional[ChainInfo]:
        return self._chains.get(chain_id)

    def require(self, chain_id: int) -> ChainInfo:
        """Return the chain or raise UnsupportedChain."""
        chain = self._chains.get(chain_id) if isinstance(chain_id, int) else None
        if chain is None:
            raise UnsupportedChain(
                f"Chain {chain_id!r} is not supported (supported: {sorted(self._chains)})"
            )
        return chain

    def __contains__(self, chain_id) -> bool:
        return chain_id in self._chains

    def __iter__(self):
        return iter(sorted(self._chains.values(), key=lambda c: c.id))

    def __len__(self) -> int:
        return len(self._chains)

    def parse_target_address(self, chain_id: int, address) -> bytes:
        """
        Normalise a destination address to the 32-byte on-chain form.

        Solana-style chains take a base58 public key. EVM chains take a
        0x-prefixed 20-byte hex address, which is left-padded with zeros;
        mixed-case input must carry a valid EIP-55 checksum. Raw 32-byte
        values are passed through.
        """
        chain = self.require(chain_id)

        if isinstance(address, (bytes, bytearray)):
            if len(address) != TARGET_ADDRESS_LEN:
                raise ValueError(f"Target address must be {TARGET_ADDRESS_LEN} bytes, got {len(address)}")
            return bytes(address)
        if isinstance(address, Pubkey):
            return bytes(address)
        if not isinstance(address, str):
            raise ValueError(f"Unsupported target address type: {type(address).__name__}")

        text = address.strip()
        if chain.address_format == SOLANA_FORMAT:
            try:
                return bytes(Pubkey.from_string(text))
            except ValueError as e:
                raise ValueError(f"Invalid {chain.name} address {text!r}: {e}") from e

        if not text.startswith(('0x', '0X')) or len(text) != 42:
            raise ValueError(f"Invalid {chain.name} address {text!r}: expected 0x + 40 hex digits")
        try:
            raw = bytes.fromhex(text[2:])
        except ValueError as e:
            raise ValueError(f"Invalid {chain.name} address {text!r}: {e}") from e

        body = text[2:]
        if body != body.lower() and body != body.upper():
            if to_checksum_address(raw) != '0x' + body:
                raise ValueError(f"Invalid {chain.name} address {text!r}: bad EIP-55 checksum")

        logger.debug(f"Parsed {chain.name} target address {text}")
        return b'\x00' * (TARGET_ADDRESS_LEN - len(raw)) + raw

    def format_target_address(self, chain_id: int, target_address: bytes) -> str:
        """Inverse of parse_target_address for display."""
        chain = self.require(chain_id)
        if chain.address_format == SOLANA_FORMAT:
            return str(Pubkey(target_address))
        if target_address[:12] == b'\x00' * 12:
            return to_checksum_address(target_address[12:])
        return '0x' + target_address.hex()
