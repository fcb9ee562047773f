"""
Tests for account schemas and the binary codec.
"""
import struct
import pytest

from yield_aggregator.bridge import BridgeStatus
from yield_aggregator.crypto import Keypair, sha256
from yield_aggregator.errors import SchemaMismatch
from yield_aggregator.state import (
    DISCRIMINATORS,
    BridgeRequest,
    GlobalState,
    OracleData,
    UserState,
    account_kind,
    account_size,
    account_to_dict,
    decode_account,
    encode_account,
)

# Offsets into encoded buffers (discriminator included)
GLOBAL_TOTAL_DEPOSITS = 40
GLOBAL_IS_INITIALIZED = 88
REQUEST_STATUS = 81


@pytest.fixture
def authority():
    return Keypair.from_seed(b'\x0a' * 32).pubkey


@pytest.fixture
def user():
    return Keypair.from_seed(b'\x0b' * 32).pubkey


@pytest.fixture
def global_state(authority):
    return GlobalState(
        authority=authority,
        total_deposits=100_000_000,
        solana_yield_rate=500,
        is_initialized=True,
        bump=254,
        oracle_data=OracleData(source_chain=2, timestamp=1_700_000_000, yield_rates=(500, 300, 400)),
        last_oracle_update=1_700_000_000,
    )


@pytest.fixture
def bridge_request(user):
    return BridgeRequest(
        user=user,
        target_chain=2,
        amount=25_000_000,
        target_address=b'\x00' * 12 + b'\xab' * 20,
        created_at=1_700_000_000,
        bump=251,
    )


class TestLayout:
    def test_sizes(self):
        assert account_size(GlobalState) == 291
        assert account_size("UserState") == 105
        assert account_size(BridgeRequest) == 99

    def test_discriminator_is_anchor_account_tag(self):
        assert DISCRIMINATORS["GlobalState"] == sha256(b"account:GlobalState")[:8]

    def test_field_positions(self, global_state, authority):
        data = encode_account(global_state)
        assert len(data) == 291
        assert data[:8] == DISCRIMINATORS["GlobalState"]
        assert data[8:40] == bytes(authority)
        assert struct.unpack_from('<Q', data, GLOBAL_TOTAL_DEPOSITS)[0] == 100_000_000
        assert data[GLOBAL_IS_INITIALIZED] == 1

    def test_global_state_round_trip(self, global_state):
        assert decode_account(encode_account(global_state), GlobalState) == global_state

    def test_bridge_request_round_trip(self, bridge_request):
        decoded = decode_account(encode_account(bridge_request), "BridgeRequest")
        assert decoded == bridge_request
        assert decoded.status is BridgeStatus.PENDING

    def test_trailing_padding_ignored(self, user):
        state = UserState(user=user, deposited_amount=5)
        assert decode_account(encode_account(state) + b'\x00' * 16, UserState) == state


class TestDecodeRejects:
    def test_wrong_discriminator(self, bridge_request):
        data = encode_account(bridge_request)
        with pytest.raises(SchemaMismatch):
            decode_account(data, UserState)

    def test_truncated(self, global_state):
        data = encode_account(global_state)
        with pytest.raises(SchemaMismatch):
            decode_account(data[:-1], GlobalState)

    def test_missing(self):
        with pytest.raises(SchemaMismatch):
            decode_account(None, GlobalState)

    def test_bad_bool_byte(self, global_state):
        data = bytearray(encode_account(global_state))
        data[GLOBAL_IS_INITIALIZED] = 2
        with pytest.raises(SchemaMismatch):
            decode_account(bytes(data), GlobalState)

    def test_status_outside_enum(self, bridge_request):
        data = bytearray(encode_account(bridge_request))
        data[REQUEST_STATUS] = 7
        with pytest.raises(SchemaMismatch):
            decode_account(bytes(data), BridgeRequest)

    def test_uninitialized_global_state(self, authority):
        data = encode_account(GlobalState(authority=authority))
        assert decode_account(data, GlobalState).is_initialized is False
        with pytest.raises(SchemaMismatch):
            decode_account(data, GlobalState, require_initialized=True)

    def test_unknown_kind(self, global_state):
        with pytest.raises(ValueError):
            decode_account(encode_account(global_state), "VaultState")


class TestValidation:
    def test_negative_balance_rejected(self, user):
        with pytest.raises(ValueError):
            UserState(user=user, deposited_amount=-1)

    def test_balance_above_u64_rejected(self, user):
        with pytest.raises(ValueError):
            UserState(user=user, deposited_amount=2**64)

    def test_target_address_length(self, user):
        with pytest.raises(ValueError):
            BridgeRequest(user=user, target_chain=2, amount=1, target_address=b'\x00' * 20)

    def test_status_coerced_to_enum(self, bridge_request, user):
        request = BridgeRequest(user=user, target_chain=2, amount=1, target_address=b'\x00' * 32, status=1)
        assert request.status is BridgeStatus.PROCESSING

    def test_oracle_rates_padded(self):
        oracle = OracleData(yield_rates=(1, 2))
        assert len(oracle.yield_rates) == 10
        assert oracle.yield_rates[:3] == (1, 2, 0)

    def test_oracle_too_many_rates(self):
        with pytest.raises(ValueError):
            OracleData(apy_data=tuple(range(11)))

    def test_oracle_dict_round_trip(self):
        oracle = OracleData(source_chain=3, timestamp=5, yield_rates=(400,), total_value_locked=9)
        assert OracleData.from_dict(oracle.to_dict()) == oracle


class TestHelpers:
    def test_available_amount(self, user):
        state = UserState(user=user, deposited_amount=100, pending_cross_chain_transfers=25)
        assert state.available_amount == 75
        delivered = UserState(user=user, deposited_amount=100, pending_cross_chain_transfers=25, cross_chain_deposits=30)
        assert delivered.available_amount == 45

    def test_yield_rate_for_falls_back_to_oracle(self, global_state):
        assert global_state.yield_rate_for(1) == 500
        # Ethereum fixed rate unset; oracle slot 2 carries 300
        assert global_state.yield_rate_for(2) == 300
        assert global_state.yield_rate_for(42) == 0

    def test_account_kind(self, bridge_request):
        assert account_kind(encode_account(bridge_request)) == "BridgeRequest"
        assert account_kind(b'\x00' * 16) is None

    def test_account_to_dict(self, bridge_request, user):
        view = account_to_dict(bridge_request)
        assert view['user'] == str(user)
        assert view['status'] == 'PENDING'
        assert view['target_address'] == bridge_request.target_address.hex()
