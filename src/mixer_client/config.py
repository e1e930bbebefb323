#!/usr/bin/env python3
"""Configuration management for the mixer client.

This module provides type-safe configuration dataclasses with validation.
Runtime settings are loaded from environment variables with sensible
defaults; contract deployments come from a JSON table that ships with the
package and can be replaced through ``DEPLOYMENTS_FILE``.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .exceptions import ConfigurationError
from .utils.encoding import normalize_amount

# Get logger for this module
logger = logging.getLogger(__name__)

PRIMARY_NET_ID = 1
DEFAULT_DEPLOYMENTS_FILE = Path(__file__).parent / "deployments.json"


def _checksum(address: str, what: str) -> str:
    if not address or not Web3.is_address(address.lower()):
        raise ConfigurationError(f"Invalid {what} address: {address!r}")
    return Web3.to_checksum_address(address.lower())


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class PoolDeployment:
    """One fixed-denomination pool contract.

    Attributes:
        net_id: Chain the pool lives on
        currency: Lowercase currency ticker (e.g. 'eth', 'dai')
        amount: Canonical denomination string (e.g. '0.1', '100')
        address: Checksummed pool contract address
        deployed_block: Block the pool was deployed in (sync start)
        decimals: Decimals of the pool token
        token_address: ERC20 token address, None for the native currency
    """
    net_id: int
    currency: str
    amount: str
    address: str
    deployed_block: int
    decimals: int = 18
    token_address: str | None = None

    @property
    def is_native(self) -> bool:
        return self.token_address is None


@dataclass(frozen=True, slots=True)
class NetworkDeployment:
    """Per-network contracts and service endpoints."""
    net_id: int
    name: str
    symbol: str
    proxy_address: str
    multicall_address: str | None
    ens_subdomain_key: str
    subgraphs: tuple[str, ...] = ()
    rpcs: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RegistryDeployment:
    """The relayer registry, which lives on the primary network only."""
    net_id: int
    address: str
    aggregator_address: str
    deployed_block: int
    subgraphs: tuple[str, ...]
    ens_subdomains: tuple[str, ...]


@dataclass(frozen=True)
class Deployments:
    """Lookup table of networks, pools and the relayer registry."""

    networks: dict[int, NetworkDeployment]
    pools: dict[tuple[int, str, str], PoolDeployment]
    registry: RegistryDeployment

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Deployments":
        """Load the deployment table from JSON.

        Args:
            path: JSON file to read; the bundled table when omitted

        Raises:
            ConfigurationError: If the file is missing or malformed
        """
        path = Path(path) if path else DEFAULT_DEPLOYMENTS_FILE
        try:
            with path.open() as file:
                data: dict[str, Any] = json.load(file)
            return cls.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Cannot load deployments from {path}: {e}") from e

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Deployments":
        networks: dict[int, NetworkDeployment] = {}
        pools: dict[tuple[int, str, str], PoolDeployment] = {}

        for raw_net_id, net in data["networks"].items():
            net_id = int(raw_net_id)
            multicall = net.get("multicall")
            networks[net_id] = NetworkDeployment(
                net_id=net_id,
                name=net["name"],
                symbol=net["symbol"],
                proxy_address=_checksum(net["proxy"], "proxy"),
                multicall_address=_checksum(multicall, "multicall") if multicall else None,
                ens_subdomain_key=net["ensSubdomainKey"],
                subgraphs=tuple(net.get("subgraphs", ())),
                rpcs=tuple(net.get("rpcs", ())),
            )
            for currency, token in net["tokens"].items():
                token_address = token.get("tokenAddress")
                for raw_amount, instance in token["instances"].items():
                    amount = normalize_amount(raw_amount)
                    pools[(net_id, currency.lower(), amount)] = PoolDeployment(
                        net_id=net_id,
                        currency=currency.lower(),
                        amount=amount,
                        address=_checksum(instance["address"], "pool"),
                        deployed_block=int(instance["deployedBlock"]),
                        decimals=int(token.get("decimals", 18)),
                        token_address=_checksum(token_address, "token") if token_address else None,
                    )

        registry = data["relayerRegistry"]
        return cls(
            networks=networks,
            pools=pools,
            registry=RegistryDeployment(
                net_id=int(registry.get("netId", PRIMARY_NET_ID)),
                address=_checksum(registry["address"], "relayer registry"),
                aggregator_address=_checksum(registry["aggregator"], "relayer aggregator"),
                deployed_block=int(registry["deployedBlock"]),
                subgraphs=tuple(registry.get("subgraphs", ())),
                ens_subdomains=tuple(registry["ensSubdomains"]),
            ),
        )

    def network(self, net_id: int) -> NetworkDeployment:
        try:
            return self.networks[int(net_id)]
        except KeyError:
            raise ConfigurationError(f"No deployment configured for network {net_id}") from None

    def pool(self, net_id: int, currency: str, amount: str) -> PoolDeployment:
        """Resolve a pool by chain, currency and denomination.

        Raises:
            ConfigurationError: If no such pool is configured
        """
        self.network(net_id)
        key = (int(net_id), currency.lower(), normalize_amount(amount))
        try:
            return self.pools[key]
        except KeyError:
            raise ConfigurationError(
                f"There is no pool for {amount} {currency.upper()} on network {net_id}, "
                "check the currency and amount you provide"
            ) from None


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Settings of the event synchronization engine."""
    block_window: int = 1000  # blocks per eth_getLogs request
    page_size: int = 1000  # records per indexing-service page
    request_timeout: int = 10  # seconds
    indexing_retry_count: int = 3  # retries per indexing request
    indexing_retry_wait: float = 2.0  # seconds, multiplied by the attempt number

    def __post_init__(self) -> None:
        """Validate sync configuration."""
        if self.block_window <= 0:
            raise ConfigurationError(f"Block window must be positive, got {self.block_window}")
        if not 0 < self.page_size <= 1000:
            raise ConfigurationError(f"Page size must be in 1..1000, got {self.page_size}")
        if self.request_timeout <= 0:
            raise ConfigurationError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.indexing_retry_count < 0:
            raise ConfigurationError(
                f"Retry count must be non-negative, got {self.indexing_retry_count}"
            )


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Settings of relayer discovery and job polling."""
    probe_timeout: float = 10.0  # seconds per /status probe
    min_stake: int = 500 * 10**18  # 500 governance tokens in base units
    poll_interval: float = 3.0  # seconds between job status requests

    def __post_init__(self) -> None:
        if self.probe_timeout <= 0:
            raise ConfigurationError(f"Probe timeout must be positive, got {self.probe_timeout}")
        if self.poll_interval <= 0:
            raise ConfigurationError(f"Poll interval must be positive, got {self.poll_interval}")


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Main configuration for one client invocation.

    Attributes:
        rpc_url: RPC endpoint of the pool's chain (first configured RPC when empty)
        net_id: Chain the pool lives on
        currency: Pool currency ticker
        amount: Pool denomination
        private_key: Key for direct withdrawals (optional)
        relayer_url: Relayer to use instead of the lottery (optional)
        registry_rpc_url: RPC of the primary network for relayer discovery
        cache_dir: Directory holding the event cache files
        only_rpc: Skip indexing services and query the chain only
        prompt_confirmation: Ask before risky or irreversible steps
        submit_tx: Broadcast signed transactions (False prints them instead)
        tor_port: Local SOCKS port to route HTTP traffic through
        merkle_tree_height: Height of the pool commitment tree
        anonymity_check_source: 'synced' checks the warning after a fresh sync,
            'cache' accepts the cache as found on disk
        prover_command: Command line of the external prover
        hasher: ``module:attribute`` path of the pool hash functions (keccak when empty)
    """

    rpc_url: str
    net_id: int
    currency: str
    amount: str
    private_key: str | None = None
    relayer_url: str | None = None
    registry_rpc_url: str | None = None
    cache_dir: Path = Path("cache")
    deployments_file: Path | None = None
    only_rpc: bool = False
    prompt_confirmation: bool = True
    submit_tx: bool = True
    tor_port: int | None = None
    merkle_tree_height: int = 20
    anonymity_check_source: str = "synced"
    prover_command: tuple[str, ...] = ()
    hasher: str = ""
    sync: SyncConfig = field(default_factory=SyncConfig)
    relayers: RelayerConfig = field(default_factory=RelayerConfig)

    ANONYMITY_SOURCES: ClassVar[set[str]] = {"synced", "cache"}

    def __post_init__(self) -> None:
        """Validate client configuration."""
        for url in (self.rpc_url, self.registry_rpc_url):
            if url and urlparse(url).scheme not in ("http", "https"):
                raise ConfigurationError(
                    f"Invalid RPC URL scheme: {url}. Expected http or https"
                )

        if self.private_key:
            # Basic private key validation (64 hex chars, optionally with 0x prefix)
            key = self.private_key.removeprefix("0x")
            if len(key) != 64:
                raise ConfigurationError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )
            try:
                int(key, 16)
            except ValueError:
                raise ConfigurationError("Invalid private key format. Must be hexadecimal") from None

        if self.anonymity_check_source not in self.ANONYMITY_SOURCES:
            raise ConfigurationError(
                f"Unsupported anonymity check source: {self.anonymity_check_source}. "
                f"Supported: {', '.join(sorted(self.ANONYMITY_SOURCES))}"
            )

        if not 1 <= self.merkle_tree_height <= 32:
            raise ConfigurationError(
                f"Merkle tree height must be in 1..32, got {self.merkle_tree_height}"
            )

        if self.hasher and not all(self.hasher.partition(":")[::2]):
            raise ConfigurationError(
                f"Invalid hasher path: {self.hasher}. Expected module:attribute"
            )

        object.__setattr__(self, "currency", self.currency.lower())
        object.__setattr__(self, "amount", normalize_amount(self.amount))

    @property
    def proxy_url(self) -> str | None:
        return f"socks5h://127.0.0.1:{self.tor_port}" if self.tor_port else None

    @classmethod
    def from_env(cls, net_id: int | None = None, currency: str | None = None, amount: str | None = None) -> "ClientConfig":
        """Load configuration from environment variables.

        Pool coordinates normally come from a parsed note and override the
        NET_ID/CURRENCY/AMOUNT variables.

        Returns:
            ClientConfig instance with loaded values

        Raises:
            ConfigurationError: If required values are missing or invalid
        """
        net_id = net_id if net_id is not None else int(os.environ.get("NET_ID", str(PRIMARY_NET_ID)))
        currency = currency or os.environ.get("CURRENCY", "eth")
        amount = amount or os.environ.get("AMOUNT", "")
        if not amount:
            raise ConfigurationError(
                "AMOUNT environment variable is required when no note is given. "
                "This is the pool denomination, e.g. 0.1"
            )

        tor_port = os.environ.get("TOR_PORT")
        prover_command = os.environ.get("PROVER_COMMAND", "")
        deployments_file = os.environ.get("DEPLOYMENTS_FILE")

        sync_config = SyncConfig(
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "10")),
        )
        relayer_config = RelayerConfig(
            probe_timeout=float(os.environ.get("PROBE_TIMEOUT", "10")),
            poll_interval=float(os.environ.get("POLL_INTERVAL", "3")),
        )

        return cls(
            rpc_url=os.environ.get("RPC_URL", ""),
            net_id=net_id,
            currency=currency,
            amount=amount,
            private_key=os.environ.get("PRIVATE_KEY") or None,
            relayer_url=os.environ.get("RELAYER_URL") or None,
            registry_rpc_url=os.environ.get("REGISTRY_RPC_URL") or None,
            cache_dir=Path(os.environ.get("CACHE_DIR", "cache")),
            deployments_file=Path(deployments_file) if deployments_file else None,
            only_rpc=_env_flag("ONLY_RPC"),
            prompt_confirmation=not _env_flag("NO_CONFIRMATION"),
            submit_tx=not _env_flag("LOCAL_MODE"),
            tor_port=int(tor_port) if tor_port else None,
            merkle_tree_height=int(os.environ.get("MERKLE_TREE_HEIGHT", "20")),
            anonymity_check_source=os.environ.get("ANONYMITY_CHECK_SOURCE", "synced"),
            prover_command=tuple(prover_command.split()),
            hasher=os.environ.get("HASHER", ""),
            sync=sync_config,
            relayers=relayer_config,
        )

    def with_rpc_url(self, rpc_url: str) -> "ClientConfig":
        """Return a copy with the RPC endpoint filled in."""
        return replace(self, rpc_url=rpc_url)

    def log_config(self) -> None:
        """Log the configuration in a readable format (hiding sensitive data)."""
        logger.info("=" * 60)
        logger.info("Mixer Client Configuration")
        logger.info("=" * 60)
        logger.info(f"  Pool: {self.amount} {self.currency.upper()} on network {self.net_id}")
        logger.info(f"  RPC URL: {self.rpc_url or '[DEFAULT]'}")
        logger.info(f"  Registry RPC URL: {self.registry_rpc_url or '[DEFAULT]'}")
        logger.info(f"  Relayer: {self.relayer_url or '[LOTTERY]'}")
        logger.info(f"  Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")
        logger.info(f"  Cache Dir: {self.cache_dir}")
        logger.info(f"  Only RPC: {self.only_rpc}")
        logger.info(f"  Confirmation Prompts: {self.prompt_confirmation}")
        logger.info(f"  Submit Transactions: {self.submit_tx}")
        logger.info(f"  Tor: {'port ' + str(self.tor_port) if self.tor_port else 'disabled'}")
        logger.info(f"  Anonymity Check Source: {self.anonymity_check_source}")
        logger.info(f"  Hasher: {self.hasher or '[KECCAK]'}")
        logger.info("=" * 60)
