#!/usr/bin/env python3
"""Tests for relayer discovery, validation, probing and selection."""

import random
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mixer_client.config import RelayerConfig
from mixer_client.exceptions import NetworkError, NoRelayerAvailableError, ValidationError
from mixer_client.models import EligibleRelayer, RelayerRecord, RelayerRegistration
from mixer_client.relayers import (
    DEFAULT_FEE_BOUNDS,
    PRIMARY_FEE_BOUNDS,
    RelayerDirectory,
    fee_bounds,
    fee_coefficient,
    fetch_relayer_status,
    relayer_status_url,
)
from mixer_client.utils.encoding import to_hex

SUBDOMAINS = ("mainnet-tornado", "bsc-tornado")
OPERATOR = "0x" + "aa" * 20
REWARD = "0x" + "bb" * 20
STAKE = 1000 * 10**18


def registration(n: int, operator: str = OPERATOR, name: str | None = None) -> RelayerRegistration:
    return RelayerRegistration(
        block_number=100 + n,
        ens_hash=to_hex(n),
        ens_name=name or f"relayer{n}.eth",
        operator_address=operator,
    )


def status_payload(net_id=56, fee=0.05, reward=REWARD, healthy="true") -> dict:
    return {
        "netId": net_id,
        "tornadoServiceFee": fee,
        "rewardAccount": reward,
        "ethPrices": {"dai": "500000000000000"},
        "health": {"status": healthy, "error": ""},
    }


def record(stake: int, fee: float, hostname: str = "r.test") -> RelayerRecord:
    return RelayerRecord(
        hostname=hostname,
        ens_name=f"{hostname}.eth",
        stake_balance=stake,
        service_fee_percent=fee,
        reward_account=REWARD,
        net_id=56,
    )


def make_directory(client=None, net_id=56, key="bsc-tornado", engine=None, aggregator=None, rng=None):
    return RelayerDirectory(
        engine=engine or MagicMock(),
        target=MagicMock(),
        aggregator=aggregator or MagicMock(),
        ens_subdomains=SUBDOMAINS,
        ens_subdomain_key=key,
        net_id=net_id,
        client=client or MagicMock(),
        config=RelayerConfig(probe_timeout=1.0),
        rng=rng,
    )


class TestFeeWeighting:
    """Tests for the fee coefficient."""

    def test_fee_bounds_per_network(self):
        assert fee_bounds(1) == PRIMARY_FEE_BOUNDS
        assert fee_bounds(56) == DEFAULT_FEE_BOUNDS

    @pytest.mark.parametrize("fee, expected", [
        (0.2, 1.0),
        (0.33, 1.0),
        (0.43, 0.75),
        (0.53, 0.0),
        (0.9, 0.0),
    ])
    def test_fee_coefficient(self, fee, expected):
        assert fee_coefficient(fee, 0.33, 0.53) == pytest.approx(expected)


class TestValidate:
    """Tests for on-chain eligibility checks."""

    def _directory(self, rows):
        aggregator = MagicMock()
        aggregator.functions.relayersData.return_value.call.return_value = rows
        return make_directory(aggregator=aggregator), aggregator

    def test_eligibility_rules(self):
        candidates = [registration(n) for n in range(6)]
        rows = [
            (OPERATOR, STAKE, True, ["main.host", "bsc.host"]),  # eligible
            (OPERATOR, STAKE, True, ["main.host", "https://bsc.host"]),  # scheme in hostname
            (OPERATOR, STAKE, True, ["", "bsc.host"]),  # no primary-network record
            ("0x" + "cc" * 20, STAKE, True, ["main.host", "bsc.host"]),  # name changed owner
            (OPERATOR, STAKE, False, ["main.host", "bsc.host"]),  # unregistered
            (OPERATOR, 10 * 10**18, True, ["main.host", "bsc.host"]),  # stake below threshold
        ]
        directory, aggregator = self._directory(rows)

        eligible = directory.validate(candidates)

        assert eligible == [EligibleRelayer("bsc.host", "relayer0.eth", STAKE, OPERATOR)]
        name_hashes, subdomains = aggregator.functions.relayersData.call_args.args
        assert name_hashes[0] == (0).to_bytes(32, "big")
        assert subdomains == list(SUBDOMAINS)

    def test_owner_comparison_ignores_case(self):
        directory, _ = self._directory([(OPERATOR.upper().replace("0X", "0x"), STAKE, True, ["m", "b.host"])])

        assert len(directory.validate([registration(1)])) == 1

    def test_registry_failure(self):
        aggregator = MagicMock()
        aggregator.functions.relayersData.return_value.call.side_effect = ConnectionError("down")
        directory = make_directory(aggregator=aggregator)

        with pytest.raises(NetworkError, match="relayer data"):
            directory.validate([registration(1)])

    def test_unknown_subdomain_key(self):
        with pytest.raises(ValueError, match="Unknown ENS subdomain key"):
            make_directory(key="nowhere-tornado")


class TestDiscover:
    @pytest.mark.asyncio
    async def test_first_registration_per_identity_wins(self):
        engine = MagicMock()
        engine.sync = AsyncMock(return_value=[
            registration(1, name="first.eth"),
            registration(2),
            registration(1, operator="0x" + "dd" * 20, name="second.eth"),
        ])
        directory = make_directory(engine=engine)

        unique = await directory.discover()

        assert [r.ens_name for r in unique] == ["first.eth", "relayer2.eth"]
        assert unique[0].operator_address == OPERATOR


class TestProbe:
    """Tests for concurrent /status probing."""

    @pytest.mark.asyncio
    async def test_probe_keeps_only_healthy_relayers(self):
        def handler(request: httpx.Request) -> httpx.Response:
            match request.url.host:
                case "good.test":
                    return httpx.Response(200, json=status_payload())
                case "down.test":
                    return httpx.Response(502)
                case "sick.test":
                    return httpx.Response(200, json=status_payload(healthy="false"))
                case "broke.test":
                    return httpx.Response(200, json={"netId": 56})
                case _:
                    return httpx.Response(200, json=status_payload(reward=""))

        eligible = [
            EligibleRelayer(host, f"{host}.eth", STAKE, OPERATOR)
            for host in ("good.test", "down.test", "sick.test", "broke.test", "noreward.test")
        ]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            available = await make_directory(client=client).probe(eligible)

        assert [r.hostname for r in available] == ["good.test"]
        assert available[0].stake_balance == STAKE
        assert available[0].service_fee_percent == 0.05
        assert available[0].reward_account == REWARD
        assert available[0].operator_address == OPERATOR

    @pytest.mark.asyncio
    async def test_non_object_payloads_are_dropped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            match request.url.host:
                case "good.test":
                    return httpx.Response(200, json=status_payload())
                case "list.test":
                    return httpx.Response(200, json=[])
                case _:
                    return httpx.Response(200, json={**status_payload(), "health": "true"})

        eligible = [
            EligibleRelayer(host, f"{host}.eth", STAKE, OPERATOR)
            for host in ("good.test", "list.test", "string-health.test")
        ]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            available = await make_directory(client=client).probe(eligible)

        assert [r.hostname for r in available] == ["good.test"]

    @pytest.mark.asyncio
    async def test_available_relayers_runs_full_pipeline(self):
        engine = MagicMock()
        engine.sync = AsyncMock(return_value=[registration(1)])
        aggregator = MagicMock()
        aggregator.functions.relayersData.return_value.call.return_value = [
            (OPERATOR, STAKE, True, ["main.host", "good.test"]),
        ]
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=status_payload()))

        async with httpx.AsyncClient(transport=transport) as client:
            directory = make_directory(client=client, engine=engine, aggregator=aggregator)
            relayer = await directory.pick()

        assert relayer.hostname == "good.test"
        assert relayer.url == "https://good.test"


class TestSelect:
    """Tests for the weighted lottery."""

    def test_empty_list(self):
        with pytest.raises(NoRelayerAvailableError):
            make_directory().select([])

    def test_selection_is_proportional_to_stake(self):
        """Equal fees and a 1000:3000 stake split give a ~1:3 pick ratio."""
        low, high = record(1000, 0.01, "low.test"), record(3000, 0.01, "high.test")
        directory = make_directory(rng=random.Random(42))

        picks = [directory.select([low, high]).hostname for _ in range(10_000)]

        ratio = picks.count("high.test") / picks.count("low.test")
        assert 2.7 < ratio < 3.3

    def test_fee_at_max_is_never_selected(self):
        expensive = record(10**30, 0.3, "expensive.test")
        cheap = record(1, 0.1, "cheap.test")
        directory = make_directory(rng=random.Random(7))

        assert {directory.select([expensive, cheap]).hostname for _ in range(1000)} == {"cheap.test"}

    def test_primary_network_uses_primary_bounds(self):
        # 0.3% is the cheapest possible fee on the primary network
        directory = make_directory(net_id=1, key="mainnet-tornado", rng=random.Random(3))
        cheap = record(1, 0.3, "cheap.test")
        expensive = record(10**30, 0.6, "expensive.test")

        assert directory.select([expensive, cheap]).hostname == "cheap.test"

    def test_all_zero_scores_fall_back_to_uniform_pick(self):
        relayers = [record(STAKE, 0.5, "a.test"), record(STAKE, 0.9, "b.test")]
        directory = make_directory(rng=random.Random(1))

        picked = {directory.select(relayers).hostname for _ in range(200)}

        assert picked == {"a.test", "b.test"}


class TestRelayerStatus:
    """Tests for manual relayer URLs."""

    def test_status_url_uses_origin(self):
        assert relayer_status_url("https://relayer.test/v1/anything?x=1") == "https://relayer.test/status"
        assert relayer_status_url("relayer.test") == "https://relayer.test/status"
        assert relayer_status_url("http://localhost:8000") == "http://localhost:8000/status"

    def test_invalid_url(self):
        with pytest.raises(ValidationError):
            relayer_status_url("https://")

    @pytest.mark.asyncio
    async def test_fetch_relayer_status(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=status_payload(net_id=1, fee="0.4"))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            relayer = await fetch_relayer_status(client, "https://relayer.test/some/path")

        assert seen == ["https://relayer.test/status"]
        assert relayer.net_id == 1
        assert relayer.service_fee_percent == 0.4
        assert relayer.hostname == "relayer.test"

    @pytest.mark.asyncio
    async def test_unreachable_relayer(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
            with pytest.raises(NetworkError):
                await fetch_relayer_status(client, "https://relayer.test")

    @pytest.mark.parametrize("payload", [
        {"unexpected": True},
        [],
        {**status_payload(), "health": "true"},
    ])
    @pytest.mark.asyncio
    async def test_invalid_status_payload(self, payload):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json=payload))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(ValidationError, match="invalid status"):
                await fetch_relayer_status(client, "https://relayer.test")
