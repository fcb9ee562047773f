"""
Test Suite: Local ledger execution

Signature checks, account list checks, atomic application, replay handling,
fault hooks and snapshots.
"""
import pytest
import pytest_asyncio

from solders.pubkey import Pubkey

from yield_aggregator.crypto import Keypair
from yield_aggregator.errors import (
    AlreadyInitialized,
    InsufficientBalance,
    InvalidAmount,
    NetworkFailure,
    SchemaMismatch,
    Unauthorized,
)
from yield_aggregator.instructions import (
    CLAIM_YIELD,
    DEPOSIT,
    INITIALIZE,
    INITIATE_CROSS_CHAIN_TRANSFER,
    UPDATE_YIELD_DATA,
    WITHDRAW,
    build_instruction,
)
from yield_aggregator.ledger import LocalLedger
from yield_aggregator.pda import (
    associated_token_address,
    bridge_request_address,
    global_state_address,
    user_state_address,
    vault_address,
)
from yield_aggregator.processor import SECONDS_PER_YEAR
from yield_aggregator.state import BridgeRequest, GlobalState, UserState, decode_account
from yield_aggregator.transport import ConfirmationStatus

PROGRAM_ID = Pubkey.from_string("HeHD9gK7PC2tzxEVoL18eAz6EPLnXe7XY9CLnDCPeRiW")
MINT = Pubkey.from_string("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return LocalLedger(PROGRAM_ID, MINT, clock=clock)


@pytest.fixture
def authority():
    return Keypair.from_seed(b'\x41' * 32)


@pytest.fixture
def alice():
    return Keypair.from_seed(b'\x42' * 32)


def signed(keypair, name, args=None, **kwargs):
    ix = build_instruction(name, PROGRAM_ID, keypair.pubkey, args, mint=MINT, **kwargs)
    ix.sign(keypair)
    return ix


async def execute(ledger, ix):
    signature = await ledger.submit(ix)
    return await ledger.confirm(signature)


@pytest_asyncio.fixture
async def initialized(ledger, authority):
    result = await execute(ledger, signed(authority, INITIALIZE))
    assert result.confirmed
    return ledger


def global_state(ledger):
    return decode_account(ledger.accounts[global_state_address(PROGRAM_ID)[0]], GlobalState)


def user_state(ledger, keypair):
    return decode_account(ledger.accounts[user_state_address(keypair.pubkey, PROGRAM_ID)[0]], UserState)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize(self, initialized, authority):
        state = global_state(initialized)
        assert state.authority == authority.pubkey
        assert state.is_initialized
        assert state.bump == global_state_address(PROGRAM_ID)[1]

    @pytest.mark.asyncio
    async def test_initialize_twice(self, initialized, alice):
        result = await execute(initialized, signed(alice, INITIALIZE))
        assert result.status is ConfirmationStatus.FAILED
        assert isinstance(result.error, AlreadyInitialized)
        assert global_state(initialized).authority != alice.pubkey


class TestPositions:
    @pytest.mark.asyncio
    async def test_deposit_moves_tokens(self, initialized, alice):
        user_token = initialized.fund_user(alice.pubkey, 150_000_000)
        result = await execute(initialized, signed(alice, DEPOSIT, {'amount': 100_000_000}))
        assert result.confirmed
        assert initialized.token_balances[user_token] == 50_000_000
        assert initialized.token_balances[vault_address(PROGRAM_ID, MINT)[0]] == 100_000_000
        assert user_state(initialized, alice).deposited_amount == 100_000_000
        assert global_state(initialized).total_deposits == 100_000_000

    @pytest.mark.asyncio
    async def test_deposit_without_tokens_changes_nothing(self, initialized, alice):
        initialized.fund_user(alice.pubkey, 10)
        before = initialized.snapshot()
        result = await execute(initialized, signed(alice, DEPOSIT, {'amount': 11}))
        assert isinstance(result.error, InsufficientBalance)
        assert initialized.snapshot() == before

    @pytest.mark.asyncio
    async def test_withdraw_returns_tokens(self, initialized, alice):
        user_token = initialized.fund_user(alice.pubkey, 100)
        await execute(initialized, signed(alice, DEPOSIT, {'amount': 100}))
        result = await execute(initialized, signed(alice, WITHDRAW, {'amount': 40}))
        assert result.confirmed
        assert initialized.token_balances[user_token] == 40
        assert user_state(initialized, alice).deposited_amount == 60

    @pytest.mark.asyncio
    async def test_claim_yield_paid_from_vault(self, initialized, authority, alice, clock):
        user_token = initialized.fund_user(alice.pubkey, 100_000_000)
        initialized.fund_vault(10_000_000)
        await execute(initialized, signed(authority, UPDATE_YIELD_DATA,
                                          {'solana_yield': 500, 'ethereum_yield': 0, 'polygon_yield': 0}))
        await execute(initialized, signed(alice, DEPOSIT, {'amount': 100_000_000}))

        clock.now += SECONDS_PER_YEAR
        result = await execute(initialized, signed(alice, CLAIM_YIELD))
        assert result.confirmed
        assert initialized.token_balances[user_token] == 5_000_000
        assert user_state(initialized, alice).total_yield_claimed == 5_000_000
        assert global_state(initialized).total_yield_earned == 5_000_000


class TestRejections:
    @pytest.mark.asyncio
    async def test_unsigned(self, initialized, alice):
        ix = build_instruction(DEPOSIT, PROGRAM_ID, alice.pubkey, {'amount': 1}, mint=MINT)
        with pytest.raises(Unauthorized):
            await initialized.submit(ix)

    @pytest.mark.asyncio
    async def test_forged_signature(self, initialized, alice):
        mallory = Keypair.from_seed(b'\x43' * 32)
        initialized.fund_user(alice.pubkey, 100)
        ix = build_instruction(DEPOSIT, PROGRAM_ID, alice.pubkey, {'amount': 1}, mint=MINT)
        ix.signature = mallory.sign(ix.get_signing_data())
        result = await execute(initialized, ix)
        assert isinstance(result.error, Unauthorized)

    @pytest.mark.asyncio
    async def test_foreign_vault(self, initialized, alice):
        other_mint = Keypair.from_seed(b'\x44' * 32).pubkey
        initialized.fund_user(alice.pubkey, 100)
        ix = build_instruction(DEPOSIT, PROGRAM_ID, alice.pubkey, {'amount': 1}, mint=other_mint)
        ix.sign(alice)
        result = await execute(initialized, ix)
        assert isinstance(result.error, SchemaMismatch)

    @pytest.mark.asyncio
    async def test_wrong_program(self, initialized, alice):
        other_program = Keypair.from_seed(b'\x45' * 32).pubkey
        ix = build_instruction(INITIALIZE, other_program, alice.pubkey)
        ix.sign(alice)
        result = await execute(initialized, ix)
        assert isinstance(result.error, SchemaMismatch)

    @pytest.mark.asyncio
    async def test_admin_instruction_from_user(self, initialized, alice):
        result = await execute(initialized, signed(alice, UPDATE_YIELD_DATA,
                                                   {'solana_yield': 1, 'ethereum_yield': 1, 'polygon_yield': 1}))
        assert isinstance(result.error, Unauthorized)
        assert global_state(initialized).solana_yield_rate == 0

    @pytest.mark.asyncio
    async def test_malformed_arguments(self, initialized, alice):
        initialized.fund_user(alice.pubkey, 100)
        await execute(initialized, signed(alice, DEPOSIT, {'amount': 100}))
        before = initialized.snapshot()

        missing = [
            signed(alice, DEPOSIT, {}),
            signed(alice, UPDATE_YIELD_DATA, {'solana_yield': 1}),
            signed(alice, INITIATE_CROSS_CHAIN_TRANSFER,
                   {'target_chain': 2, 'amount': 10, 'target_address': b'\x01' * 32}, sequence=0),
        ]
        for ix in missing:
            result = await execute(initialized, ix)
            assert result.status is ConfirmationStatus.FAILED
            assert isinstance(result.error, SchemaMismatch), ix.name

        result = await execute(initialized, signed(alice, WITHDRAW, {'amount': "10"}))
        assert isinstance(result.error, InvalidAmount)
        assert initialized.snapshot() == before

    @pytest.mark.asyncio
    async def test_bridge_sequence_reuse(self, initialized, alice):
        initialized.fund_user(alice.pubkey, 100)
        await execute(initialized, signed(alice, DEPOSIT, {'amount': 100}))
        args = {'target_chain': 2, 'amount': 10, 'target_address': b'\x01' * 32, 'sequence': 0}
        first = await execute(initialized, signed(alice, INITIATE_CROSS_CHAIN_TRANSFER, args, sequence=0))
        assert first.confirmed
        second = await execute(initialized, signed(alice, INITIATE_CROSS_CHAIN_TRANSFER, args, sequence=0))
        assert isinstance(second.error, AlreadyInitialized)
        assert user_state(initialized, alice).pending_cross_chain_transfers == 10

        address, _ = bridge_request_address(alice.pubkey, PROGRAM_ID, 0)
        assert decode_account(initialized.accounts[address], BridgeRequest).amount == 10


class TestTransportBehaviour:
    @pytest.mark.asyncio
    async def test_replay_applied_once(self, initialized, alice):
        initialized.fund_user(alice.pubkey, 100)
        ix = signed(alice, DEPOSIT, {'amount': 30})
        first = await initialized.submit(ix)
        second = await initialized.submit(ix)
        assert first == second
        assert user_state(initialized, alice).deposited_amount == 30

    @pytest.mark.asyncio
    async def test_dropped_submission(self, initialized, alice):
        initialized.fail_submissions = 1
        with pytest.raises(NetworkFailure):
            await initialized.submit(signed(alice, INITIALIZE))
        assert initialized.fail_submissions == 0

    @pytest.mark.asyncio
    async def test_withheld_confirmation_still_applies(self, initialized, alice):
        initialized.fund_user(alice.pubkey, 100)
        initialized.withhold_confirmations = True
        result = await execute(initialized, signed(alice, DEPOSIT, {'amount': 100}))
        assert result.status is ConfirmationStatus.UNKNOWN
        assert user_state(initialized, alice).deposited_amount == 100

    @pytest.mark.asyncio
    async def test_unknown_signature(self, ledger):
        result = await ledger.confirm("1" * 64)
        assert result.status is ConfirmationStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_token_balance(self, ledger, alice):
        ledger.fund_user(alice.pubkey, 7)
        assert await ledger.get_token_balance(associated_token_address(alice.pubkey, MINT)) == 7


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshot_restore(self, initialized, alice):
        initialized.fund_user(alice.pubkey, 100)
        await execute(initialized, signed(alice, DEPOSIT, {'amount': 60}))
        snapshot = initialized.snapshot()

        restored = LocalLedger(PROGRAM_ID, MINT)
        restored.restore(snapshot)
        assert restored.accounts == initialized.accounts
        assert restored.token_balances == initialized.token_balances
        assert user_state(restored, alice).deposited_amount == 60
