"""
Per-invocation session context.

A :class:`Session` is built once at startup from a :class:`ClientConfig` and
passed to every component. It resolves the pool deployment, connects to the
pool's chain and to the relayer registry chain, and binds the contracts.
"""

import logging
from dataclasses import dataclass

import httpx
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract

from .config import ClientConfig, Deployments, NetworkDeployment, PoolDeployment
from .event_sources import SyncTarget
from .event_store import CacheKey, EventStore
from .exceptions import ConfigurationError
from .hashing import Hasher, load_hasher
from .models import EventType
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    config: ClientConfig
    deployments: Deployments
    network: NetworkDeployment
    pool: PoolDeployment
    chain: ContractUtility
    registry_chain: ContractUtility
    instance: Contract
    proxy: Contract
    multicall: Contract | None
    registry: Contract
    aggregator: Contract
    store: EventStore
    hasher: Hasher

    @classmethod
    def create(cls, config: ClientConfig, deployments: Deployments | None = None) -> "Session":
        """
        Resolve deployments and open the chain connections for ``config``.

        Raises:
            ConfigurationError: If the pool is unknown or no RPC endpoint is available
        """
        deployments = deployments or Deployments.load(config.deployments_file)
        network = deployments.network(config.net_id)
        pool = deployments.pool(config.net_id, config.currency, config.amount)

        rpc_url = config.rpc_url or next(iter(network.rpcs), "")
        if not rpc_url:
            raise ConfigurationError(f"No RPC URL configured for network {network.name}")
        chain = ContractUtility(rpc_url, config.private_key or "", config.proxy_url)

        registry_deployment = deployments.registry
        if config.net_id == registry_deployment.net_id and not config.registry_rpc_url:
            registry_chain = chain
        else:
            registry_rpc = config.registry_rpc_url or next(
                iter(deployments.network(registry_deployment.net_id).rpcs), ""
            )
            if not registry_rpc:
                raise ConfigurationError("No RPC URL configured for the relayer registry network")
            registry_chain = ContractUtility(registry_rpc, proxy_url=config.proxy_url)

        logger.info(f"Session for {pool.amount} {pool.currency.upper()} on {network.name}")
        logger.info(f"  Pool address: {pool.address}")

        return cls(
            config=config,
            deployments=deployments,
            network=network,
            pool=pool,
            chain=chain,
            registry_chain=registry_chain,
            instance=chain.contract("Instance", pool.address),
            proxy=chain.contract("Proxy", network.proxy_address),
            multicall=(
                chain.contract("Multicall", network.multicall_address)
                if network.multicall_address
                else None
            ),
            registry=registry_chain.contract("RelayerRegistry", registry_deployment.address),
            aggregator=registry_chain.contract("Aggregator", registry_deployment.aggregator_address),
            store=EventStore(config.cache_dir),
            hasher=load_hasher(config.hasher),
        )

    @property
    def w3(self) -> Web3:
        return self.chain.w3

    @property
    def signer(self) -> LocalAccount | None:
        return self.chain.account

    @property
    def net_id(self) -> int:
        return self.network.net_id

    def http_client(self) -> httpx.AsyncClient:
        """New HTTP client honouring the request timeout and the Tor proxy."""
        return httpx.AsyncClient(
            timeout=self.config.sync.request_timeout,
            proxy=self.config.proxy_url,
        )

    def pool_key(self, event_type: EventType) -> CacheKey:
        return CacheKey(event_type, self.network.name, self.pool.currency, self.pool.amount)

    def deposit_target(self) -> SyncTarget:
        return SyncTarget(
            key=self.pool_key(EventType.DEPOSIT),
            contract=self.instance,
            event_name="Deposit",
            deployed_block=self.pool.deployed_block,
            subgraphs=self.network.subgraphs,
        )

    def withdrawal_target(self) -> SyncTarget:
        return SyncTarget(
            key=self.pool_key(EventType.WITHDRAWAL),
            contract=self.instance,
            event_name="Withdrawal",
            deployed_block=self.pool.deployed_block,
            subgraphs=self.network.subgraphs,
        )

    def relayer_target(self) -> SyncTarget:
        return SyncTarget(
            key=CacheKey.relayers(),
            contract=self.registry,
            event_name="RelayerRegistered",
            deployed_block=self.deployments.registry.deployed_block,
            subgraphs=self.deployments.registry.subgraphs,
        )
