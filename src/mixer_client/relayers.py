"""
Relayer discovery, validation, liveness probing and the selection lottery.

Registrations are mirrored from the relayer registry like any other event
type. Candidates are checked against the registry aggregator in one batched
call, probed over HTTP, and one relayer is drawn with probability proportional
to its stake weighted by how cheap its service fee is.
"""

import asyncio
import logging
import random
from typing import Any, Sequence
from urllib.parse import urlparse

import httpx
from web3.contract import Contract

from .config import PRIMARY_NET_ID, RelayerConfig
from .event_sources import SyncTarget
from .exceptions import NetworkError, NoRelayerAvailableError, ValidationError
from .models import EligibleRelayer, RelayerRecord, RelayerRegistration
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

# (min fee, max fee) in percent of the withdrawn amount
PRIMARY_FEE_BOUNDS = (0.33, 0.53)
DEFAULT_FEE_BOUNDS = (0.01, 0.3)


def fee_bounds(net_id: int) -> tuple[float, float]:
    return PRIMARY_FEE_BOUNDS if net_id == PRIMARY_NET_ID else DEFAULT_FEE_BOUNDS


def fee_coefficient(service_fee: float, min_fee: float, max_fee: float) -> float:
    """
    Stake multiplier for a relayer charging ``service_fee`` percent.

    1 at or below ``min_fee``, 0 at or above ``max_fee``, and a quadratic
    falloff in between.
    """
    if service_fee >= max_fee:
        return 0.0
    if service_fee <= min_fee:
        return 1.0
    return 1 - (service_fee - min_fee) ** 2 / (max_fee - min_fee) ** 2


def relayer_score(relayer: RelayerRecord, min_fee: float, max_fee: float) -> float:
    return relayer.stake_balance * fee_coefficient(relayer.service_fee_percent, min_fee, max_fee)


def relayer_status_url(url: str) -> str:
    """``/status`` endpoint of a relayer given any URL on its host."""
    parsed = urlparse(url if "://" in url else f"https://{url}")
    if not parsed.netloc:
        raise ValidationError(f"Invalid relayer URL: {url}")
    return f"{parsed.scheme}://{parsed.netloc}/status"


async def fetch_relayer_status(client: httpx.AsyncClient, url: str) -> RelayerRecord:
    """
    Query a manually chosen relayer and turn its answer into a record.

    Raises:
        NetworkError: If the relayer cannot be reached
        ValidationError: If the answer is not a valid status payload
    """
    status_url = relayer_status_url(url)
    try:
        response = await client.get(status_url)
        response.raise_for_status()
        status: dict[str, Any] = response.json()
    except httpx.HTTPError as e:
        raise NetworkError(f"Cannot reach relayer {status_url}: {e}") from e
    except ValueError as e:
        raise ValidationError(f"Relayer {status_url} returned invalid JSON") from e

    try:
        return RelayerRecord.from_status(status, urlparse(status_url).netloc)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Relayer {status_url} returned an invalid status: {e}") from e


class RelayerDirectory:
    """Finds relayers able to serve withdrawals on one network."""

    def __init__(
        self,
        engine: SyncEngine,
        target: SyncTarget,
        aggregator: Contract,
        ens_subdomains: Sequence[str],
        ens_subdomain_key: str,
        net_id: int,
        client: httpx.AsyncClient,
        config: RelayerConfig | None = None,
        rng: random.Random | None = None,
    ):
        """
        Initialize the directory.

        Args:
            engine: Sync engine used to mirror registrations
            target: Sync target of the registry's RelayerRegistered events
            aggregator: Registry aggregator contract
            ens_subdomains: Subdomain keys in the order the aggregator returns records
            ens_subdomain_key: Subdomain key of the active network
            net_id: Active network
            client: HTTP client for status probes
            config: Relayer settings
            rng: Random source of the lottery
        """
        if ens_subdomain_key not in ens_subdomains:
            raise ValueError(f"Unknown ENS subdomain key {ens_subdomain_key}")

        self.engine = engine
        self.target = target
        self.aggregator = aggregator
        self.ens_subdomains = list(ens_subdomains)
        self.subdomain_index = self.ens_subdomains.index(ens_subdomain_key)
        self.net_id = net_id
        self.client = client
        self.config = config or RelayerConfig()
        self.rng = rng or random.SystemRandom()

    async def discover(self) -> list[RelayerRegistration]:
        """
        Sync registrations and keep one per identity.

        The first registration seen for an identity wins; later re-registrations
        are ignored.
        """
        registrations = await self.engine.sync(self.target)
        seen: set[str] = set()
        unique = []
        for registration in registrations:
            if registration.ens_hash in seen:
                continue
            seen.add(registration.ens_hash)
            unique.append(registration)
        logger.info(f"Discovered {len(unique)} registered relayers")
        return unique

    def validate(self, candidates: Sequence[RelayerRegistration]) -> list[EligibleRelayer]:
        """
        Keep candidates whose on-chain registry data makes them eligible.

        A candidate is eligible when it has a hostname for the active network
        without a URI scheme, a primary-network record, its registering address
        still owns the name, it is registered, and its stake reaches the
        listing threshold.
        """
        if not candidates:
            return []

        name_hashes = [bytes.fromhex(c.ens_hash.removeprefix("0x")) for c in candidates]
        try:
            relayers_data = self.aggregator.functions.relayersData(name_hashes, self.ens_subdomains).call()
        except Exception as e:
            raise NetworkError(f"Failed reading relayer data from the registry: {e}") from e

        eligible = []
        for candidate, (owner, balance, is_registered, records) in zip(candidates, relayers_data):
            hostname = records[self.subdomain_index]
            if not hostname or "http" in hostname or not records[0]:
                continue
            if owner.lower() != candidate.operator_address.lower():
                continue
            if not is_registered or balance < self.config.min_stake:
                continue
            eligible.append(EligibleRelayer(
                hostname=hostname,
                ens_name=candidate.ens_name,
                stake_balance=int(balance),
                operator_address=candidate.operator_address,
            ))

        logger.info(f"{len(eligible)} of {len(candidates)} relayers are eligible")
        return eligible

    async def _probe_one(self, relayer: EligibleRelayer) -> RelayerRecord | None:
        try:
            response = await asyncio.wait_for(
                self.client.get(f"https://{relayer.hostname}/status"),
                timeout=self.config.probe_timeout,
            )
            response.raise_for_status()
            record = RelayerRecord.from_status(
                response.json(),
                relayer.hostname,
                relayer.ens_name,
                relayer.stake_balance,
                relayer.operator_address,
            )
        except (httpx.HTTPError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Relayer {relayer.hostname} did not answer: {e}")
            return None

        if not record.reward_account or not record.healthy:
            logger.debug(f"Relayer {relayer.hostname} is not healthy")
            return None
        return record

    async def probe(self, eligible: Sequence[EligibleRelayer]) -> list[RelayerRecord]:
        """Query every relayer's ``/status`` concurrently and keep the healthy ones."""
        results = await asyncio.gather(*(self._probe_one(relayer) for relayer in eligible))
        available = [record for record in results if record is not None]
        logger.info(f"Found {len(available)} available relayers")
        return available

    def select(self, relayers: Sequence[RelayerRecord]) -> RelayerRecord:
        """
        Draw one relayer with probability proportional to its score.

        Raises:
            NoRelayerAvailableError: If ``relayers`` is empty
        """
        if not relayers:
            raise NoRelayerAvailableError("There are no available relayers for this network")

        min_fee, max_fee = fee_bounds(self.net_id)
        scores = [relayer_score(relayer, min_fee, max_fee) for relayer in relayers]
        draw = sum(scores) * self.rng.random()

        for relayer, score in zip(relayers, scores):
            if draw < score:
                return relayer
            draw -= score

        # Every score is zero
        return relayers[self.rng.randrange(len(relayers))]

    async def available_relayers(self) -> list[RelayerRecord]:
        """Run discovery, validation and probing."""
        return await self.probe(self.validate(await self.discover()))

    async def pick(self) -> RelayerRecord:
        relayer = self.select(await self.available_relayers())
        logger.info(
            f"Selected relayer {relayer.hostname} ({relayer.ens_name}), "
            f"fee {relayer.service_fee_percent}%"
        )
        return relayer
