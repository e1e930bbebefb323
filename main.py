#!/usr/bin/env python3
"""Command line entry point of the mixer client.

Subcommands cover creating notes, withdrawing a note, syncing event caches,
listing relayers, checking cache validity and printing a compliance report.
Settings not given on the command line come from environment variables.
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from mixer_client.compliance import ComplianceReporter
from mixer_client.config import PRIMARY_NET_ID, ClientConfig, Deployments
from mixer_client.exceptions import ConfigurationError, MixerClientError
from mixer_client.fees import Web3FeeOracle
from mixer_client.hashing import load_hasher
from mixer_client.maintenance import check_cache_validity, refresh_pool_cache
from mixer_client.models import EventType
from mixer_client.note import create_note, parse_note
from mixer_client.prover import CommandProver
from mixer_client.relayers import RelayerDirectory
from mixer_client.session import Session
from mixer_client.sync_engine import SyncEngine
from mixer_client.utils.encoding import to_base_units
from mixer_client.utils.prompt import console_confirm
from mixer_client.withdrawal import WithdrawalCoordinator, WithdrawalRequest


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mixer client - withdraw shielded pool deposits through relayers or directly",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL                - RPC endpoint of the pool's network
  REGISTRY_RPC_URL       - RPC endpoint of the relayer registry network
  PRIVATE_KEY            - Key for direct withdrawals (optional)
  RELAYER_URL            - Relayer to use instead of the lottery (optional)
  CACHE_DIR              - Event cache directory (default: cache)
  DEPLOYMENTS_FILE       - Deployment table to use instead of the bundled one
  PROVER_COMMAND         - Command generating withdrawal proofs
  HASHER                 - module:attribute of the pool hash functions (default: keccak)
  ANONYMITY_CHECK_SOURCE - synced (default) or cache
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"),
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--rpc", help="RPC endpoint, overrides RPC_URL")
    parser.add_argument("--only-rpc", action="store_true", help="Query the chain only, skip indexing services")
    parser.add_argument("--non-confirmation", action="store_true", help="Do not ask before risky steps")
    parser.add_argument("--local-mode", action="store_true", help="Sign direct withdrawals without broadcasting")
    parser.add_argument("--tor", type=int, metavar="PORT", help="Route HTTP traffic through a local Tor SOCKS port")

    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-note", help="Generate a new note and its invoice")
    create.add_argument("currency")
    create.add_argument("amount")
    create.add_argument("net_id", type=int)

    withdraw = commands.add_parser("withdraw", help="Withdraw a note to a recipient")
    withdraw.add_argument("note")
    withdraw.add_argument("recipient")
    withdraw.add_argument("--relayer", help="Relayer URL, overrides RELAYER_URL")
    withdraw.add_argument("--refund", default="0", help="Native currency to buy for the recipient (token pools)")

    sync = commands.add_parser("sync", help="Sync an event cache")
    sync.add_argument("event_type", choices=[event_type.value for event_type in EventType])
    sync.add_argument("currency")
    sync.add_argument("amount")
    sync.add_argument("net_id", type=int)

    relayers = commands.add_parser("relayers", help="List available relayers")
    relayers.add_argument("net_id", type=int, nargs="?", default=PRIMARY_NET_ID)

    check = commands.add_parser("check-cache", help="Check the deposit cache root against the chain")
    check.add_argument("currency")
    check.add_argument("amount")
    check.add_argument("net_id", type=int)
    check.add_argument("--rebuild", action="store_true", help="Reload the deposit cache when its root is invalid")

    compliance = commands.add_parser("compliance", help="Show the deposit and withdrawal of a note")
    compliance.add_argument("note")

    return parser


def load_config(args: argparse.Namespace, net_id: int, currency: str, amount: str) -> ClientConfig:
    config = ClientConfig.from_env(net_id=net_id, currency=currency, amount=amount)
    if args.rpc:
        config = config.with_rpc_url(args.rpc)
    overrides: dict = {}
    if args.only_rpc:
        overrides["only_rpc"] = True
    if args.non_confirmation:
        overrides["prompt_confirmation"] = False
    if args.local_mode:
        overrides["submit_tx"] = False
    if args.tor:
        overrides["tor_port"] = args.tor
    return replace(config, **overrides) if overrides else config


def any_pool_amount(net_id: int) -> tuple[str, str]:
    """Currency and amount of some pool on ``net_id``, for commands that need only the network."""
    deployments = Deployments.load(os.environ.get("DEPLOYMENTS_FILE") or None)
    for pool in deployments.pools.values():
        if pool.net_id == net_id:
            return pool.currency, pool.amount
    raise ConfigurationError(f"No deployment configured for network {net_id}")


def relayer_directory(session: Session, engine: SyncEngine, client) -> RelayerDirectory:
    return RelayerDirectory(
        engine=engine,
        target=session.relayer_target(),
        aggregator=session.aggregator,
        ens_subdomains=session.deployments.registry.ens_subdomains,
        ens_subdomain_key=session.network.ens_subdomain_key,
        net_id=session.net_id,
        client=client,
        config=session.config.relayers,
    )


async def run(args: argparse.Namespace) -> None:
    if args.command == "create-note":
        config = load_config(args, args.net_id, args.currency, args.amount)
        note, invoice, _ = create_note(args.currency, args.amount, args.net_id, load_hasher(config.hasher))
        print(f"Your note: {note}")
        print(f"Your invoice for deposit: {invoice}")
        return

    if args.command in ("withdraw", "compliance"):
        # Coordinates only, the deposit is derived again with the pool hasher
        parsed = parse_note(args.note)
        net_id, currency, amount = parsed.net_id, parsed.currency, parsed.amount
    elif args.command == "relayers":
        net_id = args.net_id
        currency, amount = any_pool_amount(net_id)
    else:
        net_id, currency, amount = args.net_id, args.currency, args.amount

    config = load_config(args, net_id, currency, amount)
    config.log_config()
    session = Session.create(config)
    if args.command in ("withdraw", "compliance"):
        parsed = parse_note(args.note, session.hasher)

    async with session.http_client() as client:
        engine = SyncEngine.create(session.store, client, config.sync, config.only_rpc)

        match args.command:
            case "sync":
                targets = {
                    EventType.DEPOSIT.value: session.deposit_target,
                    EventType.WITHDRAWAL.value: session.withdrawal_target,
                    EventType.RELAYER.value: session.relayer_target,
                }
                events = await engine.sync(targets[args.event_type]())
                print(f"Total {args.event_type}s: {len(events)}")

            case "relayers":
                for relayer in await relayer_directory(session, engine, client).available_relayers():
                    print(
                        f"{relayer.hostname:40} {relayer.ens_name:30} "
                        f"fee {relayer.service_fee_percent}%  stake {relayer.stake_balance / 10**18:.2f}"
                    )

            case "check-cache":
                if args.rebuild:
                    result = await refresh_pool_cache(session, engine, hasher=session.hasher)
                    print(f"Deposits: {result.deposits}, withdrawals: {result.withdrawals}, rebuilt: {result.rebuilt}")
                else:
                    valid = await check_cache_validity(session, engine, hasher=session.hasher)
                    print("Cache is valid" if valid else "Cache has an invalid root")

            case "compliance":
                reporter = ComplianceReporter(session, engine)
                deposit_info = await reporter.deposit_report(parsed.deposit)
                print("\n=============Deposit=================")
                print(f"Deposit     : {amount} {currency.upper()}")
                print(f"Timestamp   : {deposit_info.timestamp}")
                print(f"From        : {deposit_info.sender}")
                print(f"Transaction : {deposit_info.tx_hash}")
                print(f"Commitment  : {deposit_info.commitment}")
                print(f"Spent       : {deposit_info.is_spent}")
                print("=====================================\n")
                if not deposit_info.is_spent:
                    print("The note was not spent!")
                    return

                withdrawal_info = await reporter.withdrawal_report(parsed.deposit)
                if withdrawal_info is None:
                    print("The withdrawal is not in the cache yet")
                    return
                print("\n=============Withdrawal==============")
                print(f"Withdrawal  : {withdrawal_info.amount} {currency.upper()}")
                print(f"Relayer Fee : {withdrawal_info.fee} {currency.upper()}")
                print(f"Timestamp   : {withdrawal_info.timestamp}")
                print(f"To          : {withdrawal_info.recipient}")
                print(f"Transaction : {withdrawal_info.tx_hash}")
                print(f"Nullifier   : {withdrawal_info.nullifier_hash}")
                print("=====================================\n")

            case "withdraw":
                if not config.prover_command:
                    raise ConfigurationError("PROVER_COMMAND is required for withdrawals")
                coordinator = WithdrawalCoordinator(
                    session=session,
                    engine=engine,
                    prover=CommandProver(config.prover_command),
                    fee_oracle=Web3FeeOracle(session.w3),
                    client=client,
                    directory=relayer_directory(session, engine, client),
                    confirm=console_confirm,
                    tree_hasher=session.hasher,
                )
                result = await coordinator.withdraw(WithdrawalRequest(
                    deposit=parsed.deposit,
                    recipient=args.recipient,
                    refund=to_base_units(args.refund, 18),
                    relayer_url=args.relayer or config.relayer_url,
                ))
                if result.raw_transaction:
                    print(f"Signed transaction: {result.raw_transaction}")
                else:
                    print(f"Withdrawal {result.state.value}: {result.tx_hash}")


def main() -> None:
    args = build_parser().parse_args()
    setup_logging(args.log_level)

    try:
        asyncio.run(run(args))

    except ConfigurationError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_URL: RPC endpoint of the pool's network")
        logger.error("  - DEPLOYMENTS_FILE: deployment table with the requested pool")
        logger.error("  - PROVER_COMMAND: command generating withdrawal proofs")
        logger.error("  - HASHER: module:attribute of the pool hash functions")
        sys.exit(1)

    except MixerClientError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
