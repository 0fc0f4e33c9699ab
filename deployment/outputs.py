from typing import Any, Dict, List, Optional

from deployment.config import DeployConfig
from deployment.constants import (
    ARTIFACT_TYPE_CHAIN_INFO,
    ARTIFACT_TYPE_CORE_CONTRACTS,
    ARTIFACT_TYPE_NODE_CONFIG,
)
from deployment.exceptions import DeploymentError
from deployment.rollup import RollupDeployResult, prepare_chain_config

CHAIN_INFO_PATH = "/config/chain-info.json"
CLIENT_CERT_PATH = "/certs/client.crt"
CLIENT_KEY_PATH = "/certs/client.key"
SIGN_METHOD = "eth_signTransaction"

# placeholders filled in by the operator's environment
L1_RPC_URL = "${L1_RPC_URL}"
SIGNER_URL = "${POPSIGNER_MTLS_URL}"
CELESTIA_RPC_URL = "${CELESTIA_RPC_URL}"


def _require_success(result: RollupDeployResult, document: str) -> None:
    if result is None or not result.success:
        raise DeploymentError(f"cannot generate {document} without a successful deployment")
    if result.contracts is None:
        raise DeploymentError(f"cannot generate {document}: deployment result has no contracts")


def chain_info(config: DeployConfig, result: RollupDeployResult) -> List[Dict[str, Any]]:
    """The chain-info document read by the node through --chain.info-files."""
    _require_success(result, "chain info")
    contracts = result.contracts
    return [
        {
            "chain-id": config.chain_id,
            "parent-chain-id": config.parent_chain_id,
            "chain-name": config.chain_name,
            "chain-config": result.chain_config or prepare_chain_config(config),
            "rollup": {
                "bridge": contracts.bridge,
                "inbox": contracts.inbox,
                "sequencer-inbox": contracts.sequencer_inbox,
                "rollup": contracts.rollup,
                "native-token": contracts.native_token,
                "upgrade-executor": contracts.upgrade_executor,
                "validator-wallet-creator": contracts.validator_wallet_creator,
                "stake-token": config.stake_token,
                "deployed-at": contracts.block_number,
            },
        }
    ]


def _external_signer() -> Dict[str, str]:
    return {
        "url": SIGNER_URL,
        "method": SIGN_METHOD,
        "client-cert": CLIENT_CERT_PATH,
        "client-private-key": CLIENT_KEY_PATH,
    }


def node_config(
    config: DeployConfig, result: Optional[RollupDeployResult] = None
) -> Dict[str, Any]:
    """Sequencer node configuration with batch poster and staker signing remotely."""
    node = {
        "sequencer": {"enable": True},
        "batch-poster": {
            "enable": True,
            "data-poster": {"external-signer": _external_signer()},
        },
        "staker": {
            "enable": True,
            "strategy": "MakeNodes",
            "data-poster": {"external-signer": _external_signer()},
        },
        "delayed-sequencer": {"enable": True},
    }

    if config.data_availability.requires_external_provider:
        sequencer_inbox = ""
        if result is not None and result.contracts is not None:
            sequencer_inbox = result.contracts.sequencer_inbox
        node["data-availability"] = {
            "enable": True,
            "sequencer-inbox-address": sequencer_inbox,
            "celestia": {"enable": True, "rpc-url": CELESTIA_RPC_URL},
        }

    return {
        "parent-chain": {"connection": {"url": L1_RPC_URL}},
        "chain": {"id": config.chain_id, "info-files": [CHAIN_INFO_PATH]},
        "http": {
            "addr": "0.0.0.0",
            "port": 8547,
            "vhosts": "*",
            "corsdomain": "*",
            "api": ["eth", "net", "web3", "arb", "debug"],
        },
        "ws": {"addr": "0.0.0.0", "port": 8548, "api": ["eth", "net", "web3"]},
        "node": node,
        "metrics": {"server": {"addr": "0.0.0.0", "port": 9642}},
    }


def core_contracts(result: RollupDeployResult) -> Dict[str, Any]:
    _require_success(result, "core contracts")
    contracts = result.contracts
    return {
        "rollup": contracts.rollup,
        "inbox": contracts.inbox,
        "outbox": contracts.outbox,
        "bridge": contracts.bridge,
        "sequencerInbox": contracts.sequencer_inbox,
        "rollupEventInbox": contracts.rollup_event_inbox,
        "challengeManager": contracts.challenge_manager,
        "adminProxy": contracts.admin_proxy,
        "upgradeExecutor": contracts.upgrade_executor,
        "validatorWalletCreator": contracts.validator_wallet_creator,
        "nativeToken": contracts.native_token,
        "deployedAtBlockNumber": contracts.block_number,
        "transactionHash": result.transaction_hash,
    }


def generate_outputs(config: DeployConfig, result: RollupDeployResult) -> Dict[str, Any]:
    """All output documents of a successful deployment, keyed by artifact type."""
    return {
        ARTIFACT_TYPE_CHAIN_INFO: chain_info(config, result),
        ARTIFACT_TYPE_NODE_CONFIG: node_config(config, result),
        ARTIFACT_TYPE_CORE_CONTRACTS: core_contracts(result),
    }
