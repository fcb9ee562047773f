"""
Test Suite: Instruction encoding, signing and account lists.
"""
import struct
import pytest

from solders.pubkey import Pubkey

from yield_aggregator.crypto import Keypair, sha256
from yield_aggregator.errors import SchemaMismatch
from yield_aggregator.instructions import (
    COMPLETE_CROSS_CHAIN_TRANSFER,
    DEPOSIT,
    INITIALIZE,
    INITIATE_CROSS_CHAIN_TRANSFER,
    UPDATE_ORACLE_DATA,
    Instruction,
    build_instruction,
    decode_instruction_data,
    encode_instruction_data,
    instruction_accounts,
)
from yield_aggregator.pda import (
    associated_token_address,
    bridge_request_address,
    global_state_address,
    user_state_address,
    vault_address,
)
from yield_aggregator.state import OracleData

PROGRAM_ID = Pubkey.from_string("HeHD9gK7PC2tzxEVoL18eAz6EPLnXe7XY9CLnDCPeRiW")
MINT = Pubkey.from_string("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")


@pytest.fixture
def user():
    return Keypair.from_seed(b'\x21' * 32)


@pytest.fixture
def deposit_ix(user):
    return build_instruction(DEPOSIT, PROGRAM_ID, user.pubkey, {'amount': 100_000_000}, mint=MINT, timestamp=1.0)


class TestInstructionData:
    def test_deposit_layout(self):
        data = encode_instruction_data(DEPOSIT, {'amount': 100_000_000})
        assert data[:8] == sha256(b"global:deposit")[:8]
        assert struct.unpack('<Q', data[8:]) == (100_000_000,)

    def test_initialize_has_no_arguments(self):
        assert len(encode_instruction_data(INITIALIZE, {})) == 8

    def test_initiate_decodes(self):
        args = {'target_chain': 2, 'amount': 25_000_000, 'target_address': b'\x01' * 32, 'sequence': 3}
        name, decoded = decode_instruction_data(encode_instruction_data(INITIATE_CROSS_CHAIN_TRANSFER, args))
        assert name == INITIATE_CROSS_CHAIN_TRANSFER
        assert decoded == args

    def test_oracle_argument(self):
        oracle = OracleData(source_chain=2, timestamp=9, yield_rates=(300,))
        _, decoded = decode_instruction_data(encode_instruction_data(UPDATE_ORACLE_DATA, {'oracle_data': oracle}))
        assert decoded['oracle_data'] == oracle

    def test_unknown_discriminator(self):
        with pytest.raises(SchemaMismatch):
            decode_instruction_data(b'\xff' * 16)

    def test_trailing_bytes(self):
        with pytest.raises(SchemaMismatch):
            decode_instruction_data(encode_instruction_data(DEPOSIT, {'amount': 1}) + b'\x00')

    def test_truncated(self):
        with pytest.raises(SchemaMismatch):
            decode_instruction_data(encode_instruction_data(DEPOSIT, {'amount': 1})[:-2])

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            encode_instruction_data("mint_everything", {})


class TestSigning:
    def test_sign_and_verify(self, user, deposit_ix):
        deposit_ix.sign(user)
        assert deposit_ix.verify_signature()
        assert deposit_ix.validate_basic() == (True, "")
        assert len(deposit_ix.signature) == 64

    def test_unsigned_fails_validation(self, deposit_ix):
        assert deposit_ix.verify_signature() is False
        assert deposit_ix.validate_basic()[0] is False

    def test_tampered_amount(self, user, deposit_ix):
        deposit_ix.sign(user)
        deposit_ix.args['amount'] = 1
        assert deposit_ix.verify_signature() is False

    def test_wrong_keypair(self, deposit_ix):
        with pytest.raises(ValueError):
            deposit_ix.sign(Keypair.from_seed(b'\x22' * 32))

    def test_zero_amount_invalid(self, user):
        ix = build_instruction(DEPOSIT, PROGRAM_ID, user.pubkey, {'amount': 0}, mint=MINT)
        ix.sign(user)
        is_valid, reason = ix.validate_basic()
        assert not is_valid
        assert "amount" in reason

    def test_missing_argument(self, user):
        ix = build_instruction(DEPOSIT, PROGRAM_ID, user.pubkey, {}, mint=MINT)
        ix.sign(user)
        assert ix.validate_basic() == (False, "deposit requires 'amount'")

    def test_dict_round_trip_keeps_signature(self, user, deposit_ix):
        deposit_ix.sign(user)
        restored = Instruction.from_dict(deposit_ix.to_dict())
        assert restored.verify_signature()
        assert restored.id == deposit_ix.id
        assert restored.signature_str == deposit_ix.signature_str

    def test_id_changes_with_args(self, user):
        a = build_instruction(DEPOSIT, PROGRAM_ID, user.pubkey, {'amount': 1}, mint=MINT, timestamp=1.0)
        b = build_instruction(DEPOSIT, PROGRAM_ID, user.pubkey, {'amount': 2}, mint=MINT, timestamp=1.0)
        assert a.id != b.id

    def test_to_solders(self, deposit_ix):
        wire = deposit_ix.to_solders()
        assert wire.program_id == PROGRAM_ID
        assert bytes(wire.data) == deposit_ix.data
        assert len(wire.accounts) == len(deposit_ix.accounts)


class TestAccountLists:
    def test_deposit_accounts(self, user):
        metas = instruction_accounts(DEPOSIT, PROGRAM_ID, user.pubkey, mint=MINT)
        assert [m.pubkey for m in metas[:5]] == [
            global_state_address(PROGRAM_ID)[0],
            user_state_address(user.pubkey, PROGRAM_ID)[0],
            user.pubkey,
            associated_token_address(user.pubkey, MINT),
            vault_address(PROGRAM_ID, MINT)[0],
        ]
        assert metas[2].is_signer

    def test_deposit_needs_mint(self, user):
        with pytest.raises(ValueError):
            instruction_accounts(DEPOSIT, PROGRAM_ID, user.pubkey)

    def test_complete_uses_request_owner(self, user):
        authority = Keypair.from_seed(b'\x23' * 32).pubkey
        metas = instruction_accounts(COMPLETE_CROSS_CHAIN_TRANSFER, PROGRAM_ID, authority,
                                     user=user.pubkey, sequence=4)
        assert metas[1].pubkey == user_state_address(user.pubkey, PROGRAM_ID)[0]
        assert metas[2].pubkey == bridge_request_address(user.pubkey, PROGRAM_ID, 4)[0]
        assert metas[3].pubkey == authority and metas[3].is_signer

    def test_bridge_needs_sequence(self, user):
        with pytest.raises(ValueError):
            instruction_accounts(INITIATE_CROSS_CHAIN_TRANSFER, PROGRAM_ID, user.pubkey)
