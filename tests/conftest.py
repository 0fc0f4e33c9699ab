import json
import zipfile
from itertools import count

import pytest
from eth_abi import decode, encode
from eth_account import Account
from eth_utils import function_abi_to_4byte_selector, to_checksum_address, to_hex
from hexbytes import HexBytes

from deployment.abi import (
    ROLLUP_CREATED_EVENT,
    UPGRADE_EXECUTOR_EXECUTE_CALL,
    WETH_BALANCE_OF,
    WETH_DEPOSIT,
    event_topic,
)
from deployment.artifacts import ArtifactBundle, ContractArtifact
from deployment.chain import ParentChainClient
from deployment.constants import ARB_SYS_ADDRESS, REQUIRED_CONTRACTS
from deployment.registry import InfrastructureRegistry
from deployment.signers import LocalSigner, decode_signed_transaction

# Common constants
PARENT_CHAIN_ID = 1337
PARENT_RPC = "http://parent-chain.test:8545"
CHILD_CHAIN_ID = 42170
DEPLOYER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
DEPLOYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
BATCH_POSTER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
BUNDLE_VERSION = "v3.2.0"


def _address(name, type_="address"):
    return {"name": name, "type": type_}


def _constructor(*inputs):
    return {"type": "constructor", "stateMutability": "nonpayable", "inputs": list(inputs)}


TEMPLATE_COMPONENTS = [
    _address("bridge"),
    _address("sequencerInbox"),
    _address("delayBufferableSequencerInbox"),
    _address("inbox"),
    _address("rollupEventInbox"),
    _address("outbox"),
]

IS_BATCH_POSTER = {
    "type": "function",
    "name": "isBatchPoster",
    "stateMutability": "view",
    "inputs": [_address("")],
    "outputs": [{"name": "", "type": "bool"}],
}

SET_IS_BATCH_POSTER = {
    "type": "function",
    "name": "setIsBatchPoster",
    "stateMutability": "nonpayable",
    "inputs": [_address("addr"), {"name": "isBatchPoster_", "type": "bool"}],
    "outputs": [],
}

CREATE_ROLLUP = {
    "type": "function",
    "name": "createRollup",
    "stateMutability": "payable",
    "inputs": [
        {
            "name": "deployParams",
            "type": "tuple",
            "components": [
                {
                    "name": "config",
                    "type": "tuple",
                    "components": [
                        {"name": "confirmPeriodBlocks", "type": "uint64"},
                        _address("stakeToken"),
                        {"name": "baseStake", "type": "uint256"},
                        {"name": "wasmModuleRoot", "type": "bytes32"},
                        _address("owner"),
                        _address("loserStakeEscrow"),
                        {"name": "chainId", "type": "uint256"},
                        {"name": "chainConfig", "type": "string"},
                        {"name": "minimumAssertionPeriod", "type": "uint256"},
                        {"name": "validatorAfkBlocks", "type": "uint64"},
                        {"name": "miniStakeValues", "type": "uint256[]"},
                        {
                            "name": "sequencerInboxMaxTimeVariation",
                            "type": "tuple",
                            "components": [
                                {"name": "delayBlocks", "type": "uint256"},
                                {"name": "futureBlocks", "type": "uint256"},
                                {"name": "delaySeconds", "type": "uint256"},
                                {"name": "futureSeconds", "type": "uint256"},
                            ],
                        },
                        {"name": "layerZeroBlockEdgeHeight", "type": "uint256"},
                        {"name": "layerZeroBigStepEdgeHeight", "type": "uint256"},
                        {"name": "layerZeroSmallStepEdgeHeight", "type": "uint256"},
                        {"name": "genesisInboxCount", "type": "uint256"},
                        _address("anyTrustFastConfirmer"),
                        {"name": "numBigStepLevel", "type": "uint8"},
                        {"name": "challengeGracePeriodBlocks", "type": "uint64"},
                        {
                            "name": "bufferConfig",
                            "type": "tuple",
                            "components": [
                                {"name": "threshold", "type": "uint64"},
                                {"name": "max", "type": "uint64"},
                                {"name": "replenishRateInBasis", "type": "uint64"},
                            ],
                        },
                    ],
                },
                {"name": "validators", "type": "address[]"},
                {"name": "maxDataSize", "type": "uint256"},
                _address("nativeToken"),
                {"name": "deployFactoriesToL2", "type": "bool"},
                {"name": "maxFeePerGasForRetryables", "type": "uint256"},
                {"name": "batchPosters", "type": "address[]"},
                _address("batchPosterManager"),
            ],
        }
    ],
    "outputs": [_address("")],
}

CONTRACT_ABIS = {
    "OneStepProverHostIo": [_constructor(_address("_customDAValidator"))],
    "SequencerInbox": [
        _constructor(
            {"name": "_maxDataSize", "type": "uint256"},
            _address("reader4844_"),
            {"name": "_isUsingFeeToken", "type": "bool"},
            {"name": "_isDelayBufferable", "type": "bool"},
        ),
        IS_BATCH_POSTER,
        SET_IS_BATCH_POSTER,
    ],
    "Inbox": [_constructor({"name": "_maxDataSize", "type": "uint256"})],
    "ERC20Inbox": [_constructor({"name": "_maxDataSize", "type": "uint256"})],
    "OneStepProofEntry": [
        _constructor(
            _address("prover0_"),
            _address("proverMem_"),
            _address("proverMath_"),
            _address("proverHostIo_"),
        )
    ],
    "BridgeCreator": [
        _constructor(
            {"name": "_ethBasedTemplates", "type": "tuple", "components": TEMPLATE_COMPONENTS},
            {"name": "_erc20BasedTemplates", "type": "tuple", "components": TEMPLATE_COMPONENTS},
        )
    ],
    "RollupCreator": [
        _constructor(
            _address("initialOwner"),
            _address("_bridgeCreator"),
            _address("_osp"),
            _address("_challengeManagerLogic"),
            _address("_rollupAdminLogic"),
            _address("_rollupUserLogic"),
            _address("_upgradeExecutorLogic"),
            _address("_validatorWalletCreator"),
            _address("_l2FactoriesDeployer"),
        ),
        CREATE_ROLLUP,
    ],
}


def contract_json(name, index):
    return {
        "contractName": name,
        "abi": CONTRACT_ABIS.get(name, []),
        "bytecode": "0x6080" + f"{index:04x}",
        "deployedBytecode": "0x6080",
    }


def selector(function_abi):
    return bytes(function_abi_to_4byte_selector(function_abi))


class FakeParentChain(ParentChainClient):
    """
    In-memory parent chain: mines every submitted transaction immediately.

    Contract creations get sequential addresses; createRollup emits RollupCreated;
    UpgradeExecutor.executeCall(setIsBatchPoster) whitelists; WETH deposit credits.
    """

    def __init__(self, chain_id=PARENT_CHAIN_ID, balance=10**21, gas_estimate=1_000_000):
        super().__init__(w3=None, poll_interval=0, receipt_timeout=1)
        self._chain_id = chain_id
        self.balance = balance
        self.gas_estimate = gas_estimate
        self.arbitrum_parent = False
        self.emit_rollup_created = True
        self.ignore_whitelisting = False
        self.revert_selectors = set()
        self.sent = list()
        self.receipts = dict()
        self.contracts = dict()
        self.batch_posters = set()
        self.stake_token_balances = dict()
        self.nonces = dict()
        self._blocks = count(100)
        self._addresses = count(0x1000)

    def chain_id(self):
        return self._chain_id

    def get_balance(self, address):
        return self.balance

    def get_nonce(self, address):
        return self.nonces.get(to_checksum_address(address), 0)

    def gas_price(self):
        return 10**9

    def estimate_gas(self, transaction):
        return self.gas_estimate

    def get_code(self, address):
        address = to_checksum_address(address)
        if address == ARB_SYS_ADDRESS and self.arbitrum_parent:
            return HexBytes(b"\xfe")
        return HexBytes(self.contracts.get(address, b""))

    def call(self, transaction):
        data = HexBytes(transaction["data"])
        if data[:4] == selector(IS_BATCH_POSTER):
            (address,) = decode(["address"], data[4:])
            return HexBytes(encode(["bool"], [to_checksum_address(address) in self.batch_posters]))
        if data[:4] == selector(WETH_BALANCE_OF):
            (address,) = decode(["address"], data[4:])
            balance = self.stake_token_balances.get(to_checksum_address(address), 0)
            return HexBytes(encode(["uint256"], [balance]))
        return HexBytes(b"")

    def send_raw_transaction(self, raw_transaction):
        signed = decode_signed_transaction(raw_transaction)
        transaction = signed.transaction
        sender = Account.recover_transaction(raw_transaction)
        self.nonces[sender] = self.nonces.get(sender, 0) + 1
        self.sent.append(dict(transaction, sender=sender, hash=to_hex(signed.hash)))

        data = bytes(transaction["data"])
        status, contract_address, logs = 1, None, []
        if data[:4] in self.revert_selectors:
            status = 0
        elif transaction["to"] is None:
            contract_address = to_checksum_address(next(self._addresses).to_bytes(20, "big"))
            self.contracts[contract_address] = bytes(data[:3])
        elif data[:4] == selector(CREATE_ROLLUP):
            if self.emit_rollup_created:
                logs.append(self.rollup_created_log())
        elif data[:4] == selector(UPGRADE_EXECUTOR_EXECUTE_CALL):
            _, inner = decode(["address", "bytes"], data[4:])
            if inner[:4] == selector(SET_IS_BATCH_POSTER) and not self.ignore_whitelisting:
                address, enabled = decode(["address", "bool"], inner[4:])
                if enabled:
                    self.batch_posters.add(to_checksum_address(address))
        elif data[:4] == selector(WETH_DEPOSIT):
            self.stake_token_balances[sender] = (
                self.stake_token_balances.get(sender, 0) + transaction["value"]
            )

        self.receipts[bytes(signed.hash)] = {
            "transactionHash": signed.hash,
            "blockNumber": next(self._blocks),
            "status": status,
            "contractAddress": contract_address,
            "gasUsed": 21000,
            "logs": logs,
        }
        return signed.hash

    def get_receipt(self, tx_hash):
        return self.receipts.get(bytes(HexBytes(tx_hash)))

    def rollup_created_log(self):
        addresses = [to_checksum_address(i.to_bytes(20, "big")) for i in range(0x2001, 0x200A)]
        return {
            "address": None,
            "topics": [
                event_topic(ROLLUP_CREATED_EVENT),
                HexBytes(encode(["address"], [ROLLUP_ADDRESS])),
                HexBytes(encode(["address"], [NATIVE_TOKEN_ADDRESS])),
            ],
            "data": HexBytes(encode(["address"] * 9, addresses)),
        }

    def sent_to(self, function_abi):
        return [tx for tx in self.sent if tx["data"][:4] == selector(function_abi)]


# RollupCreated event payload emitted by FakeParentChain
ROLLUP_ADDRESS = "0x0000000000000000000000000000000000002000"
NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"
INBOX_ADDRESS = "0x0000000000000000000000000000000000002001"
SEQUENCER_INBOX_ADDRESS = "0x0000000000000000000000000000000000002006"
UPGRADE_EXECUTOR_ADDRESS = "0x0000000000000000000000000000000000002008"


# Fixtures
@pytest.fixture
def contract_artifacts():
    return {
        name: ContractArtifact.from_json(name, contract_json(name, index))
        for index, name in enumerate(REQUIRED_CONTRACTS)
    }


@pytest.fixture
def bundle(contract_artifacts):
    return ArtifactBundle(
        contracts=contract_artifacts, version=BUNDLE_VERSION, source_url="file://test"
    )


@pytest.fixture
def artifact_dir(tmp_path):
    directory = tmp_path / "artifacts" / "contracts"
    directory.mkdir(parents=True)
    for index, name in enumerate(REQUIRED_CONTRACTS):
        with open(directory / f"{name}.json", "w") as file:
            json.dump(contract_json(name, index), file)
    return directory


@pytest.fixture
def artifact_zip(tmp_path):
    filepath = tmp_path / "bundle.zip"
    with zipfile.ZipFile(filepath, "w") as archive:
        archive.writestr("build/", "")
        for index, name in enumerate(REQUIRED_CONTRACTS):
            archive.writestr(f"build/contracts/{name}.json", json.dumps(contract_json(name, index)))
        archive.writestr("build/README.md", "not an artifact")
    return filepath


@pytest.fixture
def chain():
    return FakeParentChain()


@pytest.fixture
def client_factory(chain):
    def factory(rpc_url):
        assert rpc_url == PARENT_RPC
        return chain

    return factory


@pytest.fixture
def signer():
    return LocalSigner(DEPLOYER_KEY, chain_id=PARENT_CHAIN_ID)


@pytest.fixture
def registry(tmp_path):
    return InfrastructureRegistry(tmp_path / "infrastructure.json")


@pytest.fixture
def deploy_request():
    return {
        "chain_id": CHILD_CHAIN_ID,
        "chain_name": "test-rollup",
        "l1_chain_id": PARENT_CHAIN_ID,
        "l1_rpc": PARENT_RPC,
        "deployer_address": DEPLOYER_ADDRESS,
        "batch_posters": [BATCH_POSTER],
        "da": "celestia",
    }
