"""
Async client for the yield aggregator program.

Every operation follows the same path: parse the amount, resolve the program
addresses, read and decode the touched accounts, run the processor to check
preconditions, then sign, submit and confirm the instruction. Precondition
failures are raised before anything is submitted. Results carry the touched
accounts as read back after confirmation, never a local projection.

Operations for the same user are serialised in call order by a per-user
asyncio.Lock kept on the ClientContext; different users run concurrently.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Optional, Union

from solders.pubkey import Pubkey

from yield_aggregator import processor
from yield_aggregator.amounts import format_amount, to_base_units
from yield_aggregator.bridge import BridgeStatus
from yield_aggregator.chains import HOME_CHAIN_ID, ChainRegistry
from yield_aggregator.config import Config
from yield_aggregator.crypto import Keypair
from yield_aggregator.errors import (
    AggregatorError,
    ConfirmationTimeout,
    InsufficientBalance,
    InvalidAmount,
    NetworkFailure,
    SchemaMismatch,
)
from yield_aggregator.instructions import (
    CLAIM_YIELD,
    COMPLETE_CROSS_CHAIN_TRANSFER,
    DEPOSIT,
    INITIALIZE,
    INITIATE_CROSS_CHAIN_TRANSFER,
    RECORD_BRIDGE_PROCESSING,
    SET_AUTHORITY,
    UPDATE_ORACLE_DATA,
    UPDATE_YIELD_DATA,
    WITHDRAW,
    build_instruction,
)
from yield_aggregator.monitoring import Monitor
from yield_aggregator.pda import (
    associated_token_address,
    bridge_request_address,
    global_state_address,
    user_state_address,
    vault_address,
)
from yield_aggregator.state import (
    BridgeRequest,
    GlobalState,
    OracleData,
    UserState,
    decode_account,
)
from yield_aggregator.transport import ConfirmationStatus, DEFAULT_CONFIRM_TIMEOUT, Transport

logger = logging.getLogger(__name__)

Amount = Union[int, str, Decimal]


def _unix_now() -> int:
    return int(time.time())


@dataclass
class ClientContext:
    """Everything an operation needs to know about the deployment it targets."""
    program_id: Pubkey
    decimals: int
    transport: Transport
    mint: Optional[Pubkey] = None
    chains: ChainRegistry = field(default_factory=ChainRegistry)
    clock: Callable[[], int] = _unix_now
    confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT
    locks: dict = field(default_factory=dict, repr=False)
    sequence_hints: dict = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if isinstance(self.decimals, bool) or not isinstance(self.decimals, int) or self.decimals < 0:
            raise ValueError(f"decimals must be a non-negative integer, got {self.decimals!r}")

    @classmethod
    def from_config(cls, config: Config, transport: Transport,
                    clock: Optional[Callable[[], int]] = None) -> 'ClientContext':
        return cls(
            program_id=config.program.program_pubkey,
            decimals=config.program.decimals,
            transport=transport,
            mint=config.program.mint_pubkey,
            chains=config.chains.registry(),
            clock=clock or _unix_now,
            confirm_timeout=config.program.confirm_timeout,
        )

    def lock_for(self, user: Pubkey) -> asyncio.Lock:
        lock = self.locks.get(user)
        if lock is None:
            lock = self.locks[user] = asyncio.Lock()
        return lock


@dataclass(frozen=True)
class BridgeRequestId:
    """A bridge request is identified by its owner and per-user sequence number."""
    user: Pubkey
    sequence: int

    def address(self, program_id: Pubkey) -> Pubkey:
        return bridge_request_address(self.user, program_id, self.sequence)[0]

    def __str__(self) -> str:
        return f"{self.user}:{self.sequence}"

    @classmethod
    def parse(cls, text: str) -> 'BridgeRequestId':
        user, _, sequence = text.rpartition(':')
        if not user or not sequence.isdigit():
            raise ValueError(f"Bridge request id must look like <user>:<sequence>, got {text!r}")
        return cls(Pubkey.from_string(user), int(sequence))


@dataclass(frozen=True)
class OperationResult:
    """
    Signature plus the accounts as read back after confirmation.

    Under concurrent use global_state may already include other users'
    operations confirmed in the meantime.
    """
    signature: str
    global_state: GlobalState
    user_state: Optional[UserState] = None
    bridge_request: Optional[BridgeRequest] = None
    request_id: Optional[BridgeRequestId] = None
    amount: Optional[int] = None


@dataclass(frozen=True)
class CrossChainBalance:
    chain_id: int
    chain_name: str
    balance: int
    yield_rate: int  # basis points

    @property
    def apy(self) -> float:
        return self.yield_rate / 100


class InstructionClient:
    def __init__(self, context: ClientContext, keypair: Keypair, monitor: Optional[Monitor] = None):
        self.context = context
        self.keypair = keypair
        self.monitor = monitor

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey

    @property
    def program_id(self) -> Pubkey:
        return self.context.program_id

    def format(self, base_units: int) -> str:
        return format_amount(base_units, self.context.decimals)

    # ==========================================================================
    # READS
    # ==========================================================================

    async def _read(self, address: Pubkey, kind, required: bool):
        data = await self.context.transport.get_account(address)
        if data is None:
            if required:
                raise SchemaMismatch(f"{kind.__name__} account {address} does not exist")
            return None
        return decode_account(data, kind)

    async def get_global_state(self) -> Optional[GlobalState]:
        address, _ = global_state_address(self.program_id)
        return await self._read(address, GlobalState, required=False)

    async def _require_global(self) -> GlobalState:
        address, _ = global_state_address(self.program_id)
        data = await self.context.transport.get_account(address)
        return decode_account(data, GlobalState, require_initialized=True)

    async def get_user_state(self, user: Optional[Pubkey] = None) -> Optional[UserState]:
        address, _ = user_state_address(user or self.pubkey, self.program_id)
        return await self._read(address, UserState, required=False)

    async def get_bridge_request(self, request_id: BridgeRequestId) -> Optional[BridgeRequest]:
        return await self._read(request_id.address(self.program_id), BridgeRequest, required=False)

    async def get_bridge_requests(self, user: Optional[Pubkey] = None) -> list[tuple[BridgeRequestId, BridgeRequest]]:
        """All of a user's requests in sequence order."""
        user = user or self.pubkey
        requests = []
        sequence = 0
        while True:
            request_id = BridgeRequestId(user, sequence)
            request = await self.get_bridge_request(request_id)
            if request is None:
                return requests
            requests.append((request_id, request))
            sequence += 1

    async def get_cross_chain_balances(self, user: Optional[Pubkey] = None) -> list[CrossChainBalance]:
        """
        Where a user's funds sit: the available principal on the home chain plus
        everything delivered to each target chain by completed requests.
        """
        global_state = await self.get_global_state()
        user_state = await self.get_user_state(user)
        if global_state is None or user_state is None:
            return []

        delivered = {}
        for _, request in await self.get_bridge_requests(user):
            if request.status == BridgeStatus.COMPLETED:
                delivered[request.target_chain] = delivered.get(request.target_chain, 0) + request.amount

        balances = []
        for chain in self.context.chains:
            if chain.id == HOME_CHAIN_ID:
                balance = user_state.available_amount
            else:
                balance = delivered.get(chain.id, 0)
                if not balance:
                    continue
            balances.append(CrossChainBalance(chain.id, chain.name, balance, global_state.yield_rate_for(chain.id)))
        return balances

    def get_vault_address(self, mint: Optional[Pubkey] = None) -> Pubkey:
        return vault_address(self.program_id, mint or self.context.mint)[0]

    async def estimate_yield(self, user: Optional[Pubkey] = None, now: Optional[int] = None) -> int:
        """Yield claimable at `now` (defaults to the context clock)."""
        global_state = await self.get_global_state()
        if global_state is None:
            return 0
        user_state = await self.get_user_state(user)
        return processor.accrued_yield(global_state, user_state, self.context.clock() if now is None else now)

    # ==========================================================================
    # SUBMISSION
    # ==========================================================================

    async def _send(self, name: str, args: dict, user: Optional[Pubkey] = None,
                    sequence: Optional[int] = None) -> str:
        instruction = build_instruction(
            name, self.program_id, self.pubkey, args,
            user=user, mint=self.context.mint, sequence=sequence,
        )
        instruction.sign(self.keypair)
        is_valid, reason = instruction.validate_basic()
        if not is_valid:
            raise SchemaMismatch(f"Refusing to submit {name}: {reason}")

        transport = self.context.transport
        start = time.monotonic()
        try:
            signature = await transport.submit(instruction)
            confirmation = await transport.confirm(signature, self.context.confirm_timeout)
        except AggregatorError:
            self._record(name, 'network_error', start)
            raise

        if confirmation.status is ConfirmationStatus.UNKNOWN:
            self._record(name, 'unknown', start)
            logger.warning(f"{name} {signature} was not confirmed within {self.context.confirm_timeout}s")
            raise ConfirmationTimeout(
                f"{name} was submitted but its outcome is unknown; re-read state before retrying",
                signature=signature,
            )
        if confirmation.status is ConfirmationStatus.FAILED:
            self._record(name, 'failed', start)
            logger.warning(f"{name} {signature} failed: {confirmation.error}")
            if isinstance(confirmation.error, AggregatorError):
                raise confirmation.error
            raise NetworkFailure(f"{name} {signature} failed: {confirmation.error}")

        self._record(name, 'confirmed', start)
        logger.info(f"{name} confirmed: {signature}")
        return signature

    def _record(self, name: str, status: str, start: float):
        if self.monitor:
            self.monitor.record_operation(name, status, time.monotonic() - start)

    async def _confirmed(self, signature: str, user: Optional[Pubkey] = None,
                         request_id: Optional[BridgeRequestId] = None,
                         amount: Optional[int] = None) -> OperationResult:
        """Read back the accounts a confirmed instruction touched."""
        user_state = await self.get_user_state(user) if user is not None else None
        request = await self.get_bridge_request(request_id) if request_id is not None else None
        # Global state last, so the monitor sees the freshest totals
        global_state = await self._require_global()
        return self._finish(OperationResult(signature, global_state, user_state, request, request_id, amount))

    def _finish(self, result: OperationResult) -> OperationResult:
        if self.monitor:
            self.monitor.update(result.global_state)
            if result.bridge_request is not None:
                self.monitor.record_bridge_status(result.bridge_request.status)
        return result

    def _require_mint(self) -> Pubkey:
        if self.context.mint is None:
            raise ValueError("ClientContext.mint is required for token operations")
        return self.context.mint

    def _base_units(self, amount: Amount) -> int:
        base = to_base_units(amount, self.context.decimals)
        if base <= 0:
            raise InvalidAmount(f"Amount must be greater than zero, got {amount!r}")
        return base

    async def _allocate_sequence(self, user: Pubkey) -> int:
        """First unused request sequence; caller must hold the user's lock."""
        sequence = self.context.sequence_hints.get(user, 0)
        while await self.context.transport.get_account(bridge_request_address(user, self.program_id, sequence)[0]):
            sequence += 1
        return sequence

    # ==========================================================================
    # ADMINISTRATION
    # ==========================================================================

    async def initialize(self) -> OperationResult:
        async with self.context.lock_for(self.pubkey):
            _, bump = global_state_address(self.program_id)
            processor.process_initialize(await self.get_global_state(), self.pubkey, bump)
            signature = await self._send(INITIALIZE, {})
            return await self._confirmed(signature)

    async def set_authority(self, new_authority: Pubkey) -> OperationResult:
        async with self.context.lock_for(self.pubkey):
            processor.process_set_authority(await self._require_global(), self.pubkey, new_authority)
            signature = await self._send(SET_AUTHORITY, {'new_authority': new_authority})
            result = await self._confirmed(signature)
        logger.info(f"Authority handed to {new_authority}")
        return result

    async def update_yield_data(self, solana_yield: int, ethereum_yield: int, polygon_yield: int) -> OperationResult:
        """Set the per-chain yield rates, in basis points."""
        async with self.context.lock_for(self.pubkey):
            processor.process_update_yield_data(
                await self._require_global(), self.pubkey,
                solana_yield, ethereum_yield, polygon_yield, self.context.clock(),
            )
            signature = await self._send(UPDATE_YIELD_DATA, {
                'solana_yield': solana_yield,
                'ethereum_yield': ethereum_yield,
                'polygon_yield': polygon_yield,
            })
            return await self._confirmed(signature)

    async def update_oracle_data(self, oracle_data: OracleData) -> OperationResult:
        async with self.context.lock_for(self.pubkey):
            processor.process_update_oracle_data(
                await self._require_global(), self.pubkey, oracle_data, self.context.clock(),
            )
            signature = await self._send(UPDATE_ORACLE_DATA, {'oracle_data': oracle_data})
            return await self._confirmed(signature)

    # ==========================================================================
    # POSITIONS
    # ==========================================================================

    async def deposit(self, amount: Amount) -> OperationResult:
        """
        Move tokens from the caller's token account into the vault.

        Args:
            amount: Decimal string/Decimal in whole tokens, or an int of base units
        """
        base = self._base_units(amount)
        mint = self._require_mint()
        user = self.pubkey

        async with self.context.lock_for(user):
            _, bump = user_state_address(user, self.program_id)
            processor.process_deposit(
                await self._require_global(), await self.get_user_state(user),
                user, base, self.context.clock(), bump,
            )
            token_account = associated_token_address(user, mint)
            try:
                balance = await self.context.transport.get_token_balance(token_account)
            except NotImplementedError:
                balance = None
            if balance is not None and balance < base:
                raise InsufficientBalance(
                    f"Token account holds {self.format(balance)}, deposit needs {self.format(base)}"
                )
            signature = await self._send(DEPOSIT, {'amount': base})
            result = await self._confirmed(signature, user=user, amount=base)

        logger.info(f"Deposited {self.format(base)} for {user}")
        return result

    async def withdraw(self, amount: Amount) -> OperationResult:
        base = self._base_units(amount)
        self._require_mint()
        user = self.pubkey

        async with self.context.lock_for(user):
            processor.process_withdraw(
                await self._require_global(), await self.get_user_state(user),
                user, base, self.context.clock(),
            )
            signature = await self._send(WITHDRAW, {'amount': base})
            result = await self._confirmed(signature, user=user, amount=base)

        logger.info(f"Withdrew {self.format(base)} for {user}")
        return result

    async def claim_yield(self) -> OperationResult:
        """Claim everything accrued since the last claim; result.amount is the yield paid."""
        self._require_mint()
        user = self.pubkey

        async with self.context.lock_for(user):
            before = await self.get_user_state(user)
            processor.process_claim_yield(await self._require_global(), before, user, self.context.clock())
            signature = await self._send(CLAIM_YIELD, {})
            result = await self._confirmed(signature, user=user)

        # The ledger's clock decides the payout; report what it actually paid
        earned = result.user_state.total_yield_claimed - before.total_yield_claimed
        result = replace(result, amount=earned)
        logger.info(f"Claimed {self.format(earned)} yield for {user}")
        return result

    # ==========================================================================
    # BRIDGE
    # ==========================================================================

    async def initiate_cross_chain_transfer(self, target_chain: int, amount: Amount, target_address) -> OperationResult:
        """
        Open a bridge request for part of the caller's available principal.

        Args:
            target_chain: Registered chain id
            amount: Decimal string/Decimal in whole tokens, or an int of base units
            target_address: Destination in the chain's native format, or 32 raw bytes
        """
        base = self._base_units(amount)
        self.context.chains.require(target_chain)
        destination = self.context.chains.parse_target_address(target_chain, target_address)
        user = self.pubkey

        async with self.context.lock_for(user):
            sequence = await self._allocate_sequence(user)
            _, bump = bridge_request_address(user, self.program_id, sequence)
            processor.process_initiate_cross_chain_transfer(
                await self._require_global(), await self.get_user_state(user),
                user, target_chain, base, destination, self.context.clock(),
                self.context.chains, bump,
            )
            signature = await self._send(INITIATE_CROSS_CHAIN_TRANSFER, {
                'target_chain': target_chain,
                'amount': base,
                'target_address': destination,
                'sequence': sequence,
            }, sequence=sequence)
            self.context.sequence_hints[user] = sequence + 1
            request_id = BridgeRequestId(user, sequence)
            result = await self._confirmed(signature, user=user, request_id=request_id, amount=base)

        chain = self.context.chains.get(target_chain)
        logger.info(f"Bridge request {request_id}: {self.format(base)} to {chain.name}")
        return result

    async def _load_request(self, request_id: BridgeRequestId):
        global_state = await self._require_global()
        request = await self._read(request_id.address(self.program_id), BridgeRequest, required=True)
        return global_state, request

    async def record_bridge_processing(self, request_id: BridgeRequestId) -> OperationResult:
        """Record that the relayer has picked the request up."""
        async with self.context.lock_for(request_id.user):
            global_state, request = await self._load_request(request_id)
            processor.process_record_bridge_processing(global_state, request, self.pubkey)
            signature = await self._send(RECORD_BRIDGE_PROCESSING, {
                'bridge_request_id': request_id.sequence,
            }, user=request_id.user, sequence=request_id.sequence)
            return await self._confirmed(signature, request_id=request_id)

    async def complete_cross_chain_transfer(self, request_id: BridgeRequestId, success: bool) -> OperationResult:
        async with self.context.lock_for(request_id.user):
            global_state, request = await self._load_request(request_id)
            processor.process_complete_cross_chain_transfer(
                global_state, await self.get_user_state(request_id.user), request,
                self.pubkey, success, self.context.clock(),
            )
            signature = await self._send(COMPLETE_CROSS_CHAIN_TRANSFER, {
                'bridge_request_id': request_id.sequence,
                'success': success,
            }, user=request_id.user, sequence=request_id.sequence)
            result = await self._confirmed(signature, user=request_id.user, request_id=request_id,
                                           amount=request.amount)

        logger.info(f"Bridge request {request_id} {result.bridge_request.status.name.lower()}")
        return result
