import dataclasses
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from eth_abi.exceptions import DecodingError, EncodingError
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from hexbytes import HexBytes

from deployment.abi import (
    ROLLUP_CREATED_EVENT,
    UPGRADE_EXECUTOR_EXECUTE_CALL,
    WETH_BALANCE_OF,
    WETH_DEPOSIT,
    StructError,
    build_value,
    decode_event_log,
    decode_function_result,
    encode_function_call,
    event_topic,
)
from deployment.artifacts import ArtifactBundle
from deployment.chain import ParentChainClient
from deployment.config import DeployConfig
from deployment.constants import (
    DEFAULT_CALL_GAS_LIMIT,
    DEFAULT_CHALLENGE_GRACE_PERIOD_BLOCKS,
    DEFAULT_CONFIRM_PERIOD_BLOCKS,
    DEFAULT_INITIAL_ARBOS_VERSION,
    DEFAULT_LAYER_ZERO_BIG_STEP_EDGE_HEIGHT,
    DEFAULT_LAYER_ZERO_BLOCK_EDGE_HEIGHT,
    DEFAULT_LAYER_ZERO_SMALL_STEP_EDGE_HEIGHT,
    DEFAULT_MAX_DATA_SIZE,
    DEFAULT_MAX_FEE_PER_GAS_FOR_RETRYABLES,
    DEFAULT_MAX_TIME_VARIATION,
    DEFAULT_MINIMUM_ASSERTION_PERIOD,
    DEFAULT_NUM_BIG_STEP_LEVEL,
    DEFAULT_VALIDATOR_AFK_BLOCKS,
    DEFAULT_WASM_MODULE_ROOT,
    MAX_ROLLUP_GAS_LIMIT,
    REQUIRED_STAKE_TOKEN_BALANCE,
    ZERO_ADDRESS,
    DataAvailabilityMode,
)
from deployment.exceptions import (
    DeploymentError,
    DeploymentReverted,
    EventNotFoundError,
    InsufficientFundsError,
    ParentChainError,
    ReceiptTimeout,
)
from deployment.signers import TransactionSigner
from deployment.transactor import SubmittedTransaction, TransactionCallback, Transactor

LOGGER = logging.getLogger(__name__)

CREATE_ROLLUP = "createRollup"

# 9 non-indexed addresses, one 32-byte word each
ROLLUP_CREATED_DATA_SIZE = 9 * 32
ROLLUP_CREATED_MIN_TOPICS = 3


@dataclass(frozen=True)
class RollupContracts:
    rollup: ChecksumAddress
    inbox: ChecksumAddress
    outbox: ChecksumAddress
    bridge: ChecksumAddress
    sequencer_inbox: ChecksumAddress
    rollup_event_inbox: ChecksumAddress
    challenge_manager: ChecksumAddress
    admin_proxy: ChecksumAddress
    upgrade_executor: ChecksumAddress
    validator_wallet_creator: ChecksumAddress
    native_token: ChecksumAddress
    block_number: int = 0


@dataclass
class RollupDeployResult:
    """Outcome of a createRollup submission; on-chain failures are reported, not raised."""

    success: bool
    contracts: Optional[RollupContracts] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    chain_config: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    transactions: List[SubmittedTransaction] = field(default_factory=list)


def parse_rollup_created(receipt: Dict[str, Any]) -> RollupContracts:
    """
    Recovers the rollup contract addresses from the RollupCreated event of a receipt.
    Logs with too few topics or a short data payload are skipped.
    """
    expected_topic = event_topic(ROLLUP_CREATED_EVENT)
    logs = receipt.get("logs", [])
    for index, log in enumerate(logs):
        topics = [HexBytes(topic) for topic in log.get("topics", [])]
        if not topics or topics[0] != expected_topic:
            continue

        data = HexBytes(log.get("data", b""))
        if len(topics) < ROLLUP_CREATED_MIN_TOPICS:
            LOGGER.warning("RollupCreated log %d has %d topic(s); skipping", index, len(topics))
            continue
        if len(data) < ROLLUP_CREATED_DATA_SIZE:
            LOGGER.warning(
                "RollupCreated log %d has %d data bytes, expected %d; skipping",
                index,
                len(data),
                ROLLUP_CREATED_DATA_SIZE,
            )
            continue

        values = decode_event_log(ROLLUP_CREATED_EVENT, {"topics": topics, "data": data})
        return RollupContracts(
            rollup=values["rollupAddress"],
            native_token=values["nativeToken"],
            inbox=values["inboxAddress"],
            outbox=values["outbox"],
            rollup_event_inbox=values["rollupEventInbox"],
            challenge_manager=values["challengeManager"],
            admin_proxy=values["adminProxy"],
            sequencer_inbox=values["sequencerInbox"],
            bridge=values["bridge"],
            upgrade_executor=values["upgradeExecutor"],
            validator_wallet_creator=values["validatorWalletCreator"],
            block_number=receipt.get("blockNumber") or 0,
        )

    observed = [
        f"{index}:{log.get('address')}:{to_hex(HexBytes(log['topics'][0]))}"
        for index, log in enumerate(logs)
        if log.get("topics")
    ]
    raise EventNotFoundError(
        f"RollupCreated event not found in logs (checked {len(logs)} logs, "
        f"expected topic {to_hex(expected_topic)}, observed [{', '.join(observed)}])"
    )


def prepare_chain_config(config: DeployConfig) -> Dict[str, Any]:
    """The genesis chain config embedded in createRollup and in chain-info."""
    return {
        "chainId": config.chain_id,
        "homesteadBlock": 0,
        "daoForkBlock": None,
        "daoForkSupport": True,
        "eip150Block": 0,
        "eip155Block": 0,
        "eip158Block": 0,
        "byzantiumBlock": 0,
        "constantinopleBlock": 0,
        "petersburgBlock": 0,
        "istanbulBlock": 0,
        "muirGlacierBlock": 0,
        "berlinBlock": 0,
        "londonBlock": 0,
        "clique": {"period": 0, "epoch": 0},
        "arbitrum": {
            "EnableArbOS": True,
            "AllowDebugPrecompiles": False,
            "DataAvailabilityCommittee": config.data_availability.requires_external_provider,
            "InitialArbOSVersion": DEFAULT_INITIAL_ARBOS_VERSION,
            "InitialChainOwner": config.owner,
            "GenesisBlockNum": 0,
        },
    }


class RollupDeployer:
    """
    Creates one rollup through an existing RollupCreator, then performs
    best-effort post-deployment configuration.
    """

    def __init__(
        self,
        bundle: ArtifactBundle,
        signer: TransactionSigner,
        client_factory: Callable[[str], ParentChainClient] = ParentChainClient.from_rpc,
    ):
        self.bundle = bundle
        self.signer = signer
        self.client_factory = client_factory

    @staticmethod
    def apply_defaults(config: DeployConfig) -> DeployConfig:
        return dataclasses.replace(
            config,
            confirm_period_blocks=config.confirm_period_blocks or DEFAULT_CONFIRM_PERIOD_BLOCKS,
            max_data_size=config.max_data_size or DEFAULT_MAX_DATA_SIZE,
            data_availability=config.data_availability or DataAvailabilityMode.CELESTIA,
        )

    def deployment_params(self, config: DeployConfig, chain_config: Dict[str, Any]) -> dict:
        """The RollupDeploymentParams struct, keyed by component name."""
        mini_stakes = [config.base_stake] * (DEFAULT_NUM_BIG_STEP_LEVEL + 2)
        return {
            "config": {
                "confirmPeriodBlocks": config.confirm_period_blocks,
                "stakeToken": config.stake_token,
                "baseStake": config.base_stake,
                "wasmModuleRoot": HexBytes(DEFAULT_WASM_MODULE_ROOT),
                "owner": config.owner,
                "loserStakeEscrow": config.owner,
                "chainId": config.chain_id,
                "chainConfig": json.dumps(chain_config, separators=(",", ":")),
                "minimumAssertionPeriod": DEFAULT_MINIMUM_ASSERTION_PERIOD,
                "validatorAfkBlocks": DEFAULT_VALIDATOR_AFK_BLOCKS,
                "miniStakeValues": mini_stakes,
                "sequencerInboxMaxTimeVariation": dict(DEFAULT_MAX_TIME_VARIATION),
                "layerZeroBlockEdgeHeight": DEFAULT_LAYER_ZERO_BLOCK_EDGE_HEIGHT,
                "layerZeroBigStepEdgeHeight": DEFAULT_LAYER_ZERO_BIG_STEP_EDGE_HEIGHT,
                "layerZeroSmallStepEdgeHeight": DEFAULT_LAYER_ZERO_SMALL_STEP_EDGE_HEIGHT,
                "numBigStepLevel": DEFAULT_NUM_BIG_STEP_LEVEL,
                "challengeGracePeriodBlocks": DEFAULT_CHALLENGE_GRACE_PERIOD_BLOCKS,
            },
            "validators": list(config.validators),
            "maxDataSize": config.max_data_size,
            "nativeToken": config.native_token,
            "deployFactoriesToL2": config.deploy_factories_to_l2,
            "maxFeePerGasForRetryables": DEFAULT_MAX_FEE_PER_GAS_FOR_RETRYABLES,
            "batchPosters": list(config.batch_posters),
            "batchPosterManager": config.owner,
        }

    def encode_create_rollup(self, config: DeployConfig, chain_config: Dict[str, Any]) -> HexBytes:
        create_rollup = self.bundle["RollupCreator"].function_abi(CREATE_ROLLUP)
        inputs = create_rollup.get("inputs", [])
        if len(inputs) != 1:
            raise DeploymentError(
                f"encode createRollup: expected a single struct argument, ABI has {len(inputs)}"
            )
        try:
            # members absent from the mapping take zero values
            params = build_value(
                inputs[0], self.deployment_params(config, chain_config), strict=False
            )
            return encode_function_call(create_rollup, [params])
        except (StructError, EncodingError) as e:
            raise DeploymentError(f"encode createRollup: {e}") from e

    def deploy(
        self,
        config: DeployConfig,
        rollup_creator: str,
        cancel_event: Optional[threading.Event] = None,
        on_transaction: Optional[TransactionCallback] = None,
    ) -> RollupDeployResult:
        config = self.apply_defaults(config)
        rollup_creator = to_checksum_address(rollup_creator)
        LOGGER.info(
            "Deploying rollup '%s' (chain %d) on parent chain %d via RollupCreator %s",
            config.chain_name,
            config.chain_id,
            config.parent_chain_id,
            rollup_creator,
        )

        client = self.client_factory(config.parent_chain_rpc)
        client.verify_chain_id(config.parent_chain_id)

        balance = client.get_balance(self.signer.address)
        LOGGER.info("Deployer %s balance: %d wei", self.signer.address, balance)
        if balance == 0:
            raise InsufficientFundsError(
                f"deployer address {self.signer.address} has no balance "
                f"on chain {config.parent_chain_id}"
            )

        chain_config = prepare_chain_config(config)
        data = self.encode_create_rollup(config, chain_config)

        transactor = Transactor(client, self.signer, on_transaction=on_transaction)
        transaction = transactor.build(
            data=data,
            description=CREATE_ROLLUP,
            to=rollup_creator,
            default_gas=MAX_ROLLUP_GAS_LIMIT,
            gas_cap=MAX_ROLLUP_GAS_LIMIT,
        )
        tx_hash = transactor.submit(
            transaction, description=CREATE_ROLLUP, cancel_event=cancel_event
        )

        # createRollup is broadcast; cancellation is no longer honoured
        try:
            receipt = transactor.wait(tx_hash, description=CREATE_ROLLUP)
        except DeploymentReverted as e:
            return RollupDeployResult(
                success=False,
                transaction_hash=tx_hash,
                block_number=e.block_number,
                chain_config=chain_config,
                error=str(e),
                transactions=list(transactor.transactions),
            )
        except ReceiptTimeout as e:
            return RollupDeployResult(
                success=False,
                transaction_hash=tx_hash,
                chain_config=chain_config,
                error=f"wait for receipt: {e}",
                transactions=list(transactor.transactions),
            )

        try:
            contracts = parse_rollup_created(receipt)
        except EventNotFoundError as e:
            LOGGER.error("%s", e)
            return RollupDeployResult(
                success=False,
                transaction_hash=tx_hash,
                block_number=receipt["blockNumber"],
                chain_config=chain_config,
                error=f"parse deployment logs: {e}",
                transactions=list(transactor.transactions),
            )

        LOGGER.info(
            "Rollup deployed at %s (sequencer inbox %s, block %d)",
            contracts.rollup,
            contracts.sequencer_inbox,
            contracts.block_number,
        )

        if config.batch_posters:
            try:
                self.whitelist_batch_posters(transactor, contracts, config.batch_posters)
            except DeploymentError as e:
                LOGGER.warning("Failed to whitelist batch posters: %s", e)

        if config.stake_token != ZERO_ADDRESS:
            try:
                self.ensure_stake_token_balance(
                    transactor, config.stake_token, REQUIRED_STAKE_TOKEN_BALANCE
                )
            except DeploymentError as e:
                LOGGER.warning("Failed to fund stake token balance: %s", e)

        return RollupDeployResult(
            success=True,
            contracts=contracts,
            transaction_hash=tx_hash,
            block_number=receipt["blockNumber"],
            chain_config=chain_config,
            transactions=list(transactor.transactions),
        )

    #
    # Post-deployment
    #

    def is_batch_poster(
        self, client: ParentChainClient, sequencer_inbox: str, address: str
    ) -> bool:
        is_batch_poster = self.bundle["SequencerInbox"].function_abi("isBatchPoster")
        result = client.call(
            {"to": sequencer_inbox, "data": encode_function_call(is_batch_poster, [address])}
        )
        try:
            (whitelisted,) = decode_function_result(is_batch_poster, result)
        except DecodingError as e:
            raise ParentChainError(f"decode isBatchPoster result: {e}") from e
        return bool(whitelisted)

    def whitelist_batch_posters(
        self,
        transactor: Transactor,
        contracts: RollupContracts,
        batch_posters: List[str],
    ) -> None:
        """Whitelists batch posters on the SequencerInbox through the UpgradeExecutor."""
        client = transactor.client
        set_is_batch_poster = self.bundle["SequencerInbox"].function_abi("setIsBatchPoster")
        LOGGER.info(
            "Whitelisting %d batch poster(s) via UpgradeExecutor %s",
            len(batch_posters),
            contracts.upgrade_executor,
        )

        for batch_poster in batch_posters:
            try:
                whitelisted = self.is_batch_poster(client, contracts.sequencer_inbox, batch_poster)
            except ParentChainError as e:
                LOGGER.warning("Failed to check batch poster %s: %s", batch_poster, e)
                continue
            if whitelisted:
                LOGGER.info("Batch poster %s already whitelisted", batch_poster)
                continue

            inner = encode_function_call(set_is_batch_poster, [batch_poster, True])
            outer = encode_function_call(
                UPGRADE_EXECUTOR_EXECUTE_CALL, [contracts.sequencer_inbox, inner]
            )
            transactor.transact(
                to=contracts.upgrade_executor,
                data=outer,
                description=f"setIsBatchPoster({batch_poster})",
                default_gas=DEFAULT_CALL_GAS_LIMIT,
            )

            try:
                whitelisted = self.is_batch_poster(client, contracts.sequencer_inbox, batch_poster)
            except ParentChainError as e:
                LOGGER.warning("Failed to verify batch poster %s: %s", batch_poster, e)
                continue
            if not whitelisted:
                raise DeploymentError(
                    f"batch poster {batch_poster} not whitelisted after transaction"
                )
            LOGGER.info("Batch poster %s whitelisted", batch_poster)

    def ensure_stake_token_balance(
        self,
        transactor: Transactor,
        stake_token: str,
        required: int,
    ) -> None:
        """Wraps native currency into the stake token until the signer holds `required`."""
        client = transactor.client
        owner = self.signer.address
        result = client.call(
            {"to": stake_token, "data": encode_function_call(WETH_BALANCE_OF, [owner])}
        )
        try:
            (balance,) = decode_function_result(WETH_BALANCE_OF, result)
        except DecodingError as e:
            raise ParentChainError(f"decode balanceOf result: {e}") from e

        if balance >= required:
            LOGGER.info("Stake token balance of %s is sufficient (%d wei)", owner, balance)
            return

        deficit = required - balance
        native = client.get_balance(owner)
        if native < deficit:
            raise InsufficientFundsError(
                f"cannot wrap {deficit} wei into stake token {stake_token}: balance is {native} wei"
            )

        LOGGER.info("Wrapping %d wei into stake token %s", deficit, stake_token)
        transactor.transact(
            to=stake_token,
            data=encode_function_call(WETH_DEPOSIT, []),
            description="deposit stake token",
            value=deficit,
        )
