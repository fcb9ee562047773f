"""
Asynchronous I/O boundary between the client and a ledger.

The client never talks to a network directly. It reads accounts, submits
signed instructions and waits for confirmation through a Transport, so tests
and local simulation can swap in LocalLedger while a deployment plugs in an
RPC-backed implementation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from solders.pubkey import Pubkey

from yield_aggregator.errors import AggregatorError


DEFAULT_CONFIRM_TIMEOUT = 30.0


class ConfirmationStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    # The ledger did not answer in time; the instruction may or may not have landed.
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Confirmation:
    signature: str
    status: ConfirmationStatus
    error: Optional[AggregatorError] = None

    @property
    def confirmed(self) -> bool:
        return self.status is ConfirmationStatus.CONFIRMED


class Transport(ABC):
    """What the client needs from a ledger."""

    @abstractmethod
    async def get_account(self, address: Pubkey) -> Optional[bytes]:
        """Raw account data, or None if the account does not exist."""

    @abstractmethod
    async def submit(self, instruction) -> str:
        """
        Send a signed instruction.

        Returns the signature used to confirm it. Raises NetworkFailure if the
        instruction could not be delivered.
        """

    @abstractmethod
    async def confirm(self, signature: str, timeout: float = DEFAULT_CONFIRM_TIMEOUT) -> Confirmation:
        """Wait for the outcome of a submitted instruction."""

    async def get_token_balance(self, token_account: Pubkey) -> int:
        raise NotImplementedError(f"{type(self).__name__} does not track token balances")
