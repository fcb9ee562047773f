"""
State transitions for every aggregator instruction.

Each process_* function takes the current account states, checks every
precondition and returns the new states. Nothing is mutated: accounts are
immutable, so a failed check leaves the caller's state exactly as it was.

Check order is always: argument validation, then authority/ownership, then
balance and lifecycle checks, then the effect.
"""
from dataclasses import replace
from typing import Optional

from solders.pubkey import Pubkey

from yield_aggregator import bridge
from yield_aggregator.chains import ChainRegistry
from yield_aggregator.errors import (
    AlreadyInitialized,
    InsufficientBalance,
    InvalidAmount,
    NoYieldToClaim,
    SchemaMismatch,
    Unauthorized,
)
from yield_aggregator.state import (
    U64_MAX,
    BridgeRequest,
    GlobalState,
    OracleData,
    UserState,
)


BASIS_POINTS = 10_000
SECONDS_PER_YEAR = 365 * 24 * 3600


# ==============================================================================
# HELPERS
# ==============================================================================

def _checked_add(name: str, a: int, b: int) -> int:
    total = a + b
    if total > U64_MAX:
        raise InvalidAmount(f"{name} would overflow u64 ({a} + {b})")
    return total


def _checked_sub(name: str, a: int, b: int, error=InsufficientBalance) -> int:
    if b > a:
        raise error(f"{name} would go negative ({a} - {b})")
    return a - b


def _require_positive(amount: int, what: str):
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{what} amount must be an integer number of base units")
    if amount <= 0:
        raise InvalidAmount(f"{what} amount must be greater than zero, got {amount}")
    if amount > U64_MAX:
        raise InvalidAmount(f"{what} amount exceeds the u64 range")


def require_initialized(global_state: Optional[GlobalState]) -> GlobalState:
    if global_state is None or not global_state.is_initialized:
        raise SchemaMismatch("GlobalState is not initialized")
    return global_state


def require_authority(global_state: GlobalState, signer: Pubkey):
    if signer != global_state.authority:
        raise Unauthorized(f"Signer {signer} is not the program authority {global_state.authority}")


def require_owner(user_state: UserState, signer: Pubkey):
    if user_state.user != signer:
        raise Unauthorized(f"Signer {signer} does not own the position of {user_state.user}")


def calculate_yield(deposited_amount: int, time_delta: int, yield_rate: int) -> int:
    """
    Simple-interest yield in base units, truncated.

    deposited_amount * yield_rate / 10_000 * time_delta / seconds_per_year
    """
    if deposited_amount <= 0 or time_delta <= 0 or yield_rate <= 0:
        return 0
    return deposited_amount * yield_rate * time_delta // (BASIS_POINTS * SECONDS_PER_YEAR)


def accrued_yield(global_state: GlobalState, user_state: Optional[UserState], now: int) -> int:
    """Yield the user could claim at `now`, using the Solana rate."""
    if user_state is None:
        return 0
    return calculate_yield(
        user_state.deposited_amount,
        now - user_state.last_yield_claim,
        global_state.solana_yield_rate,
    )


# ==============================================================================
# ADMINISTRATION
# ==============================================================================

def process_initialize(global_state: Optional[GlobalState], authority: Pubkey, bump: int = 0) -> GlobalState:
    if global_state is not None and global_state.is_initialized:
        raise AlreadyInitialized(f"GlobalState already initialized with authority {global_state.authority}")
    return GlobalState(authority=authority, is_initialized=True, bump=bump)


def process_set_authority(global_state: GlobalState, signer: Pubkey, new_authority: Pubkey) -> GlobalState:
    require_initialized(global_state)
    require_authority(global_state, signer)
    return replace(global_state, authority=new_authority)


def process_update_yield_data(global_state: GlobalState, signer: Pubkey,
                              solana_yield: int, ethereum_yield: int, polygon_yield: int,
                              now: int) -> GlobalState:
    require_initialized(global_state)
    require_authority(global_state, signer)
    return replace(
        global_state,
        solana_yield_rate=solana_yield,
        ethereum_yield_rate=ethereum_yield,
        polygon_yield_rate=polygon_yield,
        last_yield_update=now,
    )


def process_update_oracle_data(global_state: GlobalState, signer: Pubkey,
                               oracle_data: OracleData, now: int) -> GlobalState:
    require_initialized(global_state)
    require_authority(global_state, signer)
    return replace(global_state, oracle_data=oracle_data, last_oracle_update=now)


# ==============================================================================
# USER POSITIONS
# ==============================================================================

def process_deposit(global_state: GlobalState, user_state: Optional[UserState],
                    user: Pubkey, amount: int, now: int,
                    bump: int = 0) -> tuple[GlobalState, UserState]:
    """Add to the user's principal; creates the UserState on first deposit."""
    _require_positive(amount, "Deposit")
    require_initialized(global_state)

    if user_state is None:
        # The yield clock starts at the first deposit.
        user_state = UserState(user=user, bump=bump, last_yield_claim=now)
    require_owner(user_state, user)

    new_user = replace(
        user_state,
        deposited_amount=_checked_add("deposited_amount", user_state.deposited_amount, amount),
        last_deposit_timestamp=now,
    )
    new_global = replace(
        global_state,
        total_deposits=_checked_add("total_deposits", global_state.total_deposits, amount),
    )
    return new_global, new_user


def process_withdraw(global_state: GlobalState, user_state: Optional[UserState],
                     user: Pubkey, amount: int, now: int) -> tuple[GlobalState, UserState]:
    """Remove principal that is not earmarked by an in-flight bridge request."""
    _require_positive(amount, "Withdraw")
    require_initialized(global_state)
    if user_state is None:
        raise InsufficientBalance(f"{user} has no deposits")
    require_owner(user_state, user)

    if amount > user_state.available_amount:
        raise InsufficientBalance(
            f"Withdraw of {amount} exceeds available balance {user_state.available_amount} "
            f"(deposited {user_state.deposited_amount}, "
            f"pending bridge {user_state.pending_cross_chain_transfers})"
        )

    new_user = replace(
        user_state,
        deposited_amount=user_state.deposited_amount - amount,
        last_withdrawal_timestamp=now,
    )
    new_global = replace(
        global_state,
        total_deposits=_checked_sub("total_deposits", global_state.total_deposits, amount),
    )
    return new_global, new_user


def process_claim_yield(global_state: GlobalState, user_state: Optional[UserState],
                        user: Pubkey, now: int) -> tuple[GlobalState, UserState, int]:
    """Returns (global_state, user_state, amount_claimed)."""
    require_initialized(global_state)
    if user_state is None:
        raise NoYieldToClaim(f"{user} has no position")
    require_owner(user_state, user)

    earned = accrued_yield(global_state, user_state, now)
    if earned <= 0:
        raise NoYieldToClaim(
            f"No yield accrued since {user_state.last_yield_claim} "
            f"(deposited {user_state.deposited_amount}, rate {global_state.solana_yield_rate} bps)"
        )

    new_user = replace(
        user_state,
        total_yield_claimed=_checked_add("total_yield_claimed", user_state.total_yield_claimed, earned),
        last_yield_claim=now,
    )
    new_global = replace(
        global_state,
        total_yield_earned=_checked_add("total_yield_earned", global_state.total_yield_earned, earned),
    )
    return new_global, new_user, earned


# ==============================================================================
# CROSS-CHAIN BRIDGE
# ==============================================================================

def process_initiate_cross_chain_transfer(global_state: GlobalState, user_state: Optional[UserState],
                                          user: Pubkey, target_chain: int, amount: int,
                                          target_address: bytes, now: int,
                                          chains: ChainRegistry,
                                          bump: int = 0) -> tuple[GlobalState, UserState, BridgeRequest]:
    """
    Earmark principal for a bridge transfer.

    The amount stays in deposited_amount; it is tracked as pending until the
    authority completes or fails the request.
    """
    _require_positive(amount, "Bridge transfer")
    chains.require(target_chain)
    if len(target_address) != 32:
        raise ValueError(f"Target address must be 32 bytes, got {len(target_address)}")
    require_initialized(global_state)
    if user_state is None:
        raise InsufficientBalance(f"{user} has no deposits to bridge")
    require_owner(user_state, user)

    if amount > user_state.available_amount:
        raise InsufficientBalance(
            f"Bridge transfer of {amount} exceeds available balance {user_state.available_amount}"
        )

    request = bridge.open_request(user, target_chain, amount, target_address, now, bump=bump)
    new_user = replace(
        user_state,
        pending_cross_chain_transfers=user_state.pending_cross_chain_transfers + amount,
    )
    new_global = replace(
        global_state,
        pending_cross_chain_amount=_checked_add(
            "pending_cross_chain_amount", global_state.pending_cross_chain_amount, amount
        ),
    )
    return new_global, new_user, request


def process_record_bridge_processing(global_state: GlobalState, request: BridgeRequest,
                                     signer: Pubkey) -> BridgeRequest:
    require_initialized(global_state)
    require_authority(global_state, signer)
    return bridge.mark_processing(request)


def process_complete_cross_chain_transfer(global_state: GlobalState, user_state: UserState,
                                          request: BridgeRequest, signer: Pubkey,
                                          success: bool, now: int
                                          ) -> tuple[GlobalState, UserState, BridgeRequest]:
    """
    Settle a bridge request.

    Both outcomes release the pending earmark. Success records the amount as
    a cross-chain deposit, which keeps it out of the available balance;
    failure returns it to the available balance.
    """
    require_initialized(global_state)
    require_authority(global_state, signer)
    if user_state is None or user_state.user != request.user:
        raise Unauthorized(f"UserState does not belong to bridge request owner {request.user}")

    settled = bridge.finish(request, success, now)
    amount = request.amount

    user_changes = {
        'pending_cross_chain_transfers': _checked_sub(
            "pending_cross_chain_transfers", user_state.pending_cross_chain_transfers, amount
        ),
    }
    global_changes = {
        'pending_cross_chain_amount': _checked_sub(
            "pending_cross_chain_amount", global_state.pending_cross_chain_amount, amount
        ),
    }
    if success:
        user_changes['cross_chain_deposits'] = _checked_add(
            "cross_chain_deposits", user_state.cross_chain_deposits, amount
        )
        global_changes['total_cross_chain_deposits'] = _checked_add(
            "total_cross_chain_deposits", global_state.total_cross_chain_deposits, amount
        )

    return replace(global_state, **global_changes), replace(user_state, **user_changes), settled
