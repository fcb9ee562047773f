"""
In-memory ledger that executes aggregator instructions.

LocalLedger implements Transport on top of a plain account map, running each
submitted instruction through the processor the way the on-chain program
would. Every instruction is applied under one lock and all of its writes are
committed together, so a rejected instruction leaves every account as it was.

Used for deterministic tests and local simulation; fault hooks let tests
drop submissions or withhold confirmations.
"""
import asyncio
import logging
import struct
import time
from typing import Callable, Optional

import msgpack
from solders.pubkey import Pubkey

from yield_aggregator import processor
from yield_aggregator.chains import ChainRegistry
from yield_aggregator.errors import (
    AggregatorError,
    AlreadyInitialized,
    InsufficientBalance,
    NetworkFailure,
    SchemaMismatch,
    Unauthorized,
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
    Instruction,
)
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
    UserState,
    decode_account,
    encode_account,
)
from yield_aggregator.transport import (
    DEFAULT_CONFIRM_TIMEOUT,
    Confirmation,
    ConfirmationStatus,
    Transport,
)

logger = logging.getLogger(__name__)


class _Pending:
    """Writes collected while an instruction runs; committed only on success."""

    def __init__(self):
        self.accounts = {}
        self.token_deltas = {}

    def write(self, address: Pubkey, account):
        self.accounts[address] = encode_account(account)

    def move_tokens(self, source: Pubkey, destination: Pubkey, amount: int):
        self.token_deltas[source] = self.token_deltas.get(source, 0) - amount
        self.token_deltas[destination] = self.token_deltas.get(destination, 0) + amount


class LocalLedger(Transport):
    def __init__(self,
                 program_id: Pubkey,
                 mint: Pubkey,
                 chains: Optional[ChainRegistry] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.program_id = program_id
        self.mint = mint
        self.chains = chains or ChainRegistry()
        self.clock = clock or (lambda: int(time.time()))

        self.accounts: dict[Pubkey, bytes] = {}
        self.token_balances: dict[Pubkey, int] = {}
        self.results: dict[str, Confirmation] = {}
        self.lock = asyncio.Lock()

        # Fault hooks
        self.fail_submissions = 0
        self.withhold_confirmations = False

    # ==========================================================================
    # TRANSPORT
    # ==========================================================================

    async def get_account(self, address: Pubkey) -> Optional[bytes]:
        return self.accounts.get(address)

    async def get_token_balance(self, token_account: Pubkey) -> int:
        return self.token_balances.get(token_account, 0)

    async def submit(self, instruction: Instruction) -> str:
        if self.fail_submissions > 0:
            self.fail_submissions -= 1
            raise NetworkFailure(f"Submission of {instruction.name} was dropped")
        if not instruction.signature:
            raise Unauthorized(f"{instruction.name} instruction is not signed")

        signature = instruction.signature_str
        async with self.lock:
            if signature in self.results:
                logger.debug(f"Ignoring replayed instruction {signature}")
                return signature
            try:
                self._process_instruction(instruction)
                result = Confirmation(signature, ConfirmationStatus.CONFIRMED)
                logger.info(f"Applied {instruction.name} from {instruction.signer}")
            except AggregatorError as e:
                result = Confirmation(signature, ConfirmationStatus.FAILED, e)
                logger.warning(f"Rejected {instruction.name} from {instruction.signer}: {e}")
            except (KeyError, TypeError, ValueError, struct.error) as e:
                error = SchemaMismatch(f"Invalid {instruction.name} arguments: {e}")
                result = Confirmation(signature, ConfirmationStatus.FAILED, error)
                logger.warning(f"Rejected {instruction.name} from {instruction.signer}: {error}")
            self.results[signature] = result
        return signature

    async def confirm(self, signature: str, timeout: float = DEFAULT_CONFIRM_TIMEOUT) -> Confirmation:
        await asyncio.sleep(0)
        if self.withhold_confirmations or signature not in self.results:
            return Confirmation(signature, ConfirmationStatus.UNKNOWN)
        return self.results[signature]

    # ==========================================================================
    # TOKENS
    # ==========================================================================

    def mint_to(self, token_account: Pubkey, amount: int):
        """Credit a token account; test and simulation setup only."""
        if amount < 0:
            raise ValueError("Mint amount must be non-negative")
        self.token_balances[token_account] = self.token_balances.get(token_account, 0) + amount

    def fund_user(self, user: Pubkey, amount: int) -> Pubkey:
        """Credit the user's associated token account and return its address."""
        token_account = associated_token_address(user, self.mint)
        self.mint_to(token_account, amount)
        return token_account

    def fund_vault(self, amount: int) -> Pubkey:
        vault, _ = vault_address(self.program_id, self.mint)
        self.mint_to(vault, amount)
        return vault

    # ==========================================================================
    # SNAPSHOTS
    # ==========================================================================

    def snapshot(self) -> bytes:
        return msgpack.packb({
            'accounts': {str(k): v for k, v in self.accounts.items()},
            'token_balances': {str(k): v for k, v in self.token_balances.items()},
        }, use_bin_type=True)

    def restore(self, data: bytes):
        state = msgpack.unpackb(data, raw=False)
        self.accounts = {Pubkey.from_string(k): v for k, v in state['accounts'].items()}
        self.token_balances = {Pubkey.from_string(k): v for k, v in state['token_balances'].items()}

    # ==========================================================================
    # EXECUTION
    # ==========================================================================

    def _load(self, address: Pubkey, kind, required=True):
        data = self.accounts.get(address)
        if data is None:
            if required:
                raise SchemaMismatch(f"{kind.__name__} account {address} does not exist")
            return None
        return decode_account(data, kind)

    def _expect_account(self, instruction: Instruction, index: int, expected: Pubkey):
        if index >= len(instruction.accounts):
            raise SchemaMismatch(f"{instruction.name} is missing account #{index}")
        actual = instruction.accounts[index].pubkey
        if actual != expected:
            raise SchemaMismatch(
                f"{instruction.name} account #{index} is {actual}, expected {expected}"
            )

    def _process_instruction(self, instruction: Instruction):
        if instruction.program_id != self.program_id:
            raise SchemaMismatch(f"Instruction targets program {instruction.program_id}")
        if not instruction.verify_signature():
            raise Unauthorized("Invalid instruction signature")
        if not any(m.pubkey == instruction.signer and m.is_signer for m in instruction.accounts):
            raise Unauthorized("Signer missing from account list")

        global_address, global_bump = global_state_address(self.program_id)
        self._expect_account(instruction, 0, global_address)

        pending = _Pending()
        now = self.clock()
        name = instruction.name

        if name == INITIALIZE:
            current = self._load(global_address, GlobalState, required=False)
            new_global = processor.process_initialize(current, instruction.signer, global_bump)
            pending.write(global_address, new_global)

        elif name in (DEPOSIT, WITHDRAW, CLAIM_YIELD):
            self._process_position(instruction, pending, global_address, now)

        elif name == UPDATE_YIELD_DATA:
            args = instruction.args
            new_global = processor.process_update_yield_data(
                self._load(global_address, GlobalState), instruction.signer,
                args['solana_yield'], args['ethereum_yield'], args['polygon_yield'], now,
            )
            pending.write(global_address, new_global)

        elif name == SET_AUTHORITY:
            new_global = processor.process_set_authority(
                self._load(global_address, GlobalState), instruction.signer,
                instruction.args['new_authority'],
            )
            pending.write(global_address, new_global)

        elif name == UPDATE_ORACLE_DATA:
            new_global = processor.process_update_oracle_data(
                self._load(global_address, GlobalState), instruction.signer,
                instruction.args['oracle_data'], now,
            )
            pending.write(global_address, new_global)

        elif name == INITIATE_CROSS_CHAIN_TRANSFER:
            self._process_initiate(instruction, pending, global_address, now)

        elif name in (COMPLETE_CROSS_CHAIN_TRANSFER, RECORD_BRIDGE_PROCESSING):
            self._process_settlement(instruction, pending, global_address, now)

        else:
            raise SchemaMismatch(f"Unsupported instruction: {name}")

        self._commit(pending)

    def _process_position(self, instruction: Instruction, pending: _Pending,
                          global_address: Pubkey, now: int):
        user = instruction.signer
        user_address, user_bump = user_state_address(user, self.program_id)
        user_token = associated_token_address(user, self.mint)
        vault, _ = vault_address(self.program_id, self.mint)
        self._expect_account(instruction, 1, user_address)
        self._expect_account(instruction, 3, user_token)
        self._expect_account(instruction, 4, vault)

        global_state = self._load(global_address, GlobalState)
        user_state = self._load(user_address, UserState, required=False)

        if instruction.name == DEPOSIT:
            amount = instruction.args['amount']
            new_global, new_user = processor.process_deposit(
                global_state, user_state, user, amount, now, user_bump
            )
            source, destination = user_token, vault
        elif instruction.name == WITHDRAW:
            amount = instruction.args['amount']
            new_global, new_user = processor.process_withdraw(global_state, user_state, user, amount, now)
            source, destination = vault, user_token
        else:
            new_global, new_user, amount = processor.process_claim_yield(global_state, user_state, user, now)
            source, destination = vault, user_token

        balance = self.token_balances.get(source, 0)
        if balance < amount:
            raise InsufficientBalance(f"Token account {source} holds {balance}, needs {amount}")

        pending.move_tokens(source, destination, amount)
        pending.write(global_address, new_global)
        pending.write(user_address, new_user)

    def _process_initiate(self, instruction: Instruction, pending: _Pending,
                          global_address: Pubkey, now: int):
        user = instruction.signer
        args = instruction.args
        user_address, _ = user_state_address(user, self.program_id)
        request_address, request_bump = bridge_request_address(user, self.program_id, args['sequence'])
        self._expect_account(instruction, 1, user_address)
        self._expect_account(instruction, 2, request_address)
        if request_address in self.accounts:
            raise AlreadyInitialized(f"Bridge request #{args['sequence']} of {user} already exists")

        new_global, new_user, request = processor.process_initiate_cross_chain_transfer(
            self._load(global_address, GlobalState),
            self._load(user_address, UserState, required=False),
            user, args['target_chain'], args['amount'], args['target_address'], now,
            self.chains, request_bump,
        )
        pending.write(global_address, new_global)
        pending.write(user_address, new_user)
        pending.write(request_address, request)

    def _process_settlement(self, instruction: Instruction, pending: _Pending,
                            global_address: Pubkey, now: int):
        if len(instruction.accounts) < 3:
            raise SchemaMismatch(f"{instruction.name} is missing the bridge request account")
        request_address = instruction.accounts[2].pubkey
        request = self._load(request_address, BridgeRequest)

        sequence = instruction.args['bridge_request_id']
        expected, _ = bridge_request_address(request.user, self.program_id, sequence)
        self._expect_account(instruction, 2, expected)
        user_address, _ = user_state_address(request.user, self.program_id)
        self._expect_account(instruction, 1, user_address)

        global_state = self._load(global_address, GlobalState)
        if instruction.name == RECORD_BRIDGE_PROCESSING:
            updated = processor.process_record_bridge_processing(global_state, request, instruction.signer)
            pending.write(request_address, updated)
            return

        new_global, new_user, settled = processor.process_complete_cross_chain_transfer(
            global_state, self._load(user_address, UserState), request,
            instruction.signer, instruction.args['success'], now,
        )
        pending.write(global_address, new_global)
        pending.write(user_address, new_user)
        pending.write(request_address, settled)

    def _commit(self, pending: _Pending):
        for address, delta in pending.token_deltas.items():
            self.token_balances[address] = self.token_balances.get(address, 0) + delta
        self.accounts.update(pending.accounts)
