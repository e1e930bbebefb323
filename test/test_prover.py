#!/usr/bin/env python3
"""Tests for witness construction and the external prover."""

import json
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest
from web3 import Web3

from mixer_client.exceptions import ProverError
from mixer_client.models import MerkleProof
from mixer_client.note import Deposit
from mixer_client.prover import CommandProver, ProofData, WithdrawalProofBuilder, WithdrawalWitness
from mixer_client.utils.encoding import to_hex

RECIPIENT = "0x" + "cd" * 20
RELAYER = "0x" + "bb" * 20
INSTANCE = "0x" + "12" * 20


@pytest.fixture
def deposit():
    return Deposit.create(12345, 67890)


@pytest.fixture
def merkle_proof():
    return MerkleProof(root=999, path_elements=(1, 2, 3), path_indices=(0, 1, 0), leaf_index=2)


@pytest.fixture
def witness(deposit, merkle_proof):
    return WithdrawalWitness(
        deposit=deposit,
        merkle_proof=merkle_proof,
        recipient=RECIPIENT,
        relayer=RELAYER,
        fee=10**15,
        refund=0,
    )


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=["prover"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestWithdrawalWitness:
    def test_circuit_input_uses_decimal_strings(self, witness, deposit):
        data = witness.to_input()

        assert data["root"] == "999"
        assert data["nullifierHash"] == str(deposit.nullifier_hash)
        assert data["recipient"] == str(int(RECIPIENT, 16))
        assert data["fee"] == str(10**15)
        assert data["refund"] == "0"
        assert data["nullifier"] == "12345"
        assert data["secret"] == "67890"
        assert data["pathElements"] == ["1", "2", "3"]
        assert data["pathIndices"] == [0, 1, 0]

    def test_public_args_are_hex(self, witness, deposit):
        args = witness.public_args()

        assert args[0] == to_hex(999)
        assert args[1] == deposit.nullifier_hex
        assert args[2] == RECIPIENT
        assert args[3] == RELAYER
        assert args[4] == to_hex(10**15)
        assert len(args[5]) == 66


class TestProofData:
    def test_contract_args(self, witness):
        proof = ProofData(proof="0x" + "ef" * 8, args=witness.public_args())

        args = proof.contract_args(INSTANCE)

        assert len(args) == 8
        assert args[0] == Web3.to_checksum_address(INSTANCE)
        assert args[1] == bytes.fromhex("ef" * 8)
        assert args[2] == (999).to_bytes(32, "big")
        assert args[4] == Web3.to_checksum_address(RECIPIENT)
        assert args[5] == Web3.to_checksum_address(RELAYER)
        assert args[6] == 10**15 == proof.fee
        assert args[7] == 0 == proof.refund


class TestCommandProver:
    """Tests for CommandProver."""

    def test_requires_command(self):
        with pytest.raises(ValueError, match="Prover command is required"):
            CommandProver([])

    @patch("mixer_client.prover.subprocess.run")
    def test_json_output(self, mock_run, witness):
        mock_run.return_value = completed(stdout='{"proof": "0xabcd"}\n')

        assert CommandProver(["prover", "--json"], timeout=30).prove(witness) == "0xabcd"

        args, kwargs = mock_run.call_args
        assert args[0] == ["prover", "--json"]
        assert json.loads(kwargs["input"]) == witness.to_input()
        assert kwargs["timeout"] == 30

    @patch("mixer_client.prover.subprocess.run")
    def test_bare_hex_output_gets_prefix(self, mock_run, witness):
        mock_run.return_value = completed(stdout="abcd\n")

        assert CommandProver(["prover"]).prove(witness) == "0xabcd"

    @patch("mixer_client.prover.subprocess.run")
    def test_nonzero_exit(self, mock_run, witness):
        mock_run.return_value = completed(returncode=2, stderr="witness does not satisfy constraints")

        with pytest.raises(ProverError, match="code 2: witness does not satisfy"):
            CommandProver(["prover"]).prove(witness)

    @patch("mixer_client.prover.subprocess.run")
    def test_timeout(self, mock_run, witness):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="prover", timeout=1)

        with pytest.raises(ProverError, match="failed to run"):
            CommandProver(["prover"], timeout=1).prove(witness)

    @patch("mixer_client.prover.subprocess.run")
    def test_empty_output(self, mock_run, witness):
        mock_run.return_value = completed(stdout="  \n")

        with pytest.raises(ProverError, match="no proof"):
            CommandProver(["prover"]).prove(witness)

    @patch("mixer_client.prover.subprocess.run")
    def test_malformed_json(self, mock_run, witness):
        mock_run.return_value = completed(stdout='{"result": 1}')

        with pytest.raises(ProverError, match="malformed JSON"):
            CommandProver(["prover"]).prove(witness)

    def test_real_subprocess(self, witness):
        script = (
            "import json, sys; data = json.load(sys.stdin); "
            "print(json.dumps({'proof': hex(int(data['fee']))}))"
        )

        assert CommandProver([sys.executable, "-c", script]).prove(witness) == hex(10**15)


class TestWithdrawalProofBuilder:
    @pytest.mark.asyncio
    async def test_estimate_then_finalize(self, deposit, merkle_proof):
        prover = MagicMock()
        prover.prove.side_effect = ["0x01", "0x02"]
        builder = WithdrawalProofBuilder(prover, deposit, RECIPIENT, RELAYER, refund=5)

        provisional = await builder.estimate(100, merkle_proof)
        final = await builder.finalize(250, merkle_proof)

        assert provisional.proof == "0x01"
        assert provisional.fee == 100
        assert final.proof == "0x02"
        assert final.fee == 250
        assert final.refund == 5
        witnesses = [call.args[0] for call in prover.prove.call_args_list]
        assert all(w.merkle_proof is merkle_proof for w in witnesses)
        assert witnesses[0].recipient == Web3.to_checksum_address(RECIPIENT)
