"""
Command line helpers for the yield aggregator.

Derives program addresses, converts amounts between decimal text and base
units, decodes raw account data, and writes a sample configuration. None of
the commands touch the network.
"""
import json
import sys
import argparse
import logging
from pathlib import Path

from yield_aggregator.amounts import format_amount, parse_amount
from yield_aggregator.config import DEFAULT_PROGRAM_ID, Config
from yield_aggregator.errors import AggregatorError
from yield_aggregator.pda import (
    associated_token_address,
    bridge_request_address,
    global_state_address,
    user_state_address,
    vault_address,
)
from yield_aggregator.state import ACCOUNT_TYPES, account_kind, account_to_dict, decode_account

logger = logging.getLogger(__name__)


def derive(args) -> dict:
    if args.account == "global":
        address, bump = global_state_address(args.program_id)
    elif args.account == "user":
        address, bump = user_state_address(args.user, args.program_id)
    elif args.account == "vault":
        address, bump = vault_address(args.program_id, args.mint)
    elif args.account == "bridge":
        address, bump = bridge_request_address(args.user, args.program_id, args.sequence)
    else:
        return {"address": str(associated_token_address(args.user, args.mint))}
    return {"address": str(address), "bump": bump}


def decode(args) -> dict:
    if args.file:
        data = Path(args.file).read_bytes()
    else:
        data = bytes.fromhex(args.hex)
    kind = args.kind or account_kind(data)
    if kind is None:
        raise ValueError("Account discriminator not recognised; pass --kind")
    account = decode_account(data, kind)
    return {"kind": kind, **account_to_dict(account)}


def write_sample_config(output: str, decimals: int):
    config = Config.default(decimals)
    config.to_file(output)
    print(f"Generated sample configuration at: {output}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="yield-aggregator", description="Yield aggregator client tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Address derivation
    parser_derive = subparsers.add_parser("derive", help="Derive a program account address")
    parser_derive.add_argument("account", choices=["global", "user", "vault", "bridge", "token"])
    parser_derive.add_argument("--program-id", default=DEFAULT_PROGRAM_ID, help="Program id (base58)")
    parser_derive.add_argument("--user", help="User public key (base58)")
    parser_derive.add_argument("--mint", help="Token mint (base58)")
    parser_derive.add_argument("--sequence", type=int, help="Bridge request sequence number")

    # Amount conversion
    parser_amount = subparsers.add_parser("amount", help="Convert between decimal amounts and base units")
    parser_amount.add_argument("direction", choices=["parse", "format"])
    parser_amount.add_argument("value")
    parser_amount.add_argument("--decimals", type=int, required=True, help="Token decimal precision")

    # Account decoding
    parser_decode = subparsers.add_parser("decode", help="Decode raw account data")
    source = parser_decode.add_mutually_exclusive_group(required=True)
    source.add_argument("--hex", help="Account data as hex")
    source.add_argument("--file", help="File holding raw account data")
    parser_decode.add_argument("--kind", choices=sorted(ACCOUNT_TYPES), help="Expected account kind")

    # Configuration
    parser_config = subparsers.add_parser("sample-config", help="Write a sample configuration file")
    parser_config.add_argument("--output", default="aggregator.json", help="Output file path")
    parser_config.add_argument("--decimals", type=int, required=True, help="Token decimal precision")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        if args.command == "derive":
            if args.account in ("user", "bridge", "token") and not args.user:
                parser.error(f"derive {args.account} requires --user")
            if args.account == "token" and not args.mint:
                parser.error("derive token requires --mint")
            print(json.dumps(derive(args), indent=2))
        elif args.command == "amount":
            if args.direction == "parse":
                print(parse_amount(args.value, args.decimals))
            else:
                print(format_amount(int(args.value), args.decimals))
        elif args.command == "decode":
            print(json.dumps(decode(args), indent=2))
        elif args.command == "sample-config":
            write_sample_config(args.output, args.decimals)
    except (AggregatorError, ValueError, OSError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
