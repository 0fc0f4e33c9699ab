from enum import Enum
from pathlib import Path

#
# Filesystem
#

DEPLOYMENT_DIR = Path(__file__).parent
CONSTRUCTOR_PARAMS_DIR = DEPLOYMENT_DIR / "constructor_params"
NITRO_INFRASTRUCTURE_PLAN = CONSTRUCTOR_PARAMS_DIR / "nitro.yml"
ARTIFACTS_DIR = Path.cwd() / "artifacts"
INFRASTRUCTURE_REGISTRY_FILEPATH = ARTIFACTS_DIR / "infrastructure.json"

#
# Contract artifacts
#

ARTIFACT_VERSION = "v3.2.0-beta.0"
ARTIFACT_BASE_URL = "https://nitro-contracts.s3.nl-ams.scw.cloud"
ARTIFACT_DOWNLOAD_TIMEOUT = 300

# version -> "sha256:<hex>"; a version missing here is refused
ARTIFACT_CHECKSUMS = {
    "v3.2.0-beta.0": "sha256:10f1c0eade0e1d9c51ddc9df04d96bca108f6794dc132139c3a1ae1024608b9c",
}

REQUIRED_CONTRACTS = (
    "RollupCreator",
    "BridgeCreator",
    "SequencerInbox",
    "Bridge",
    "Inbox",
    "Outbox",
    "RollupEventInbox",
    "RollupCore",
    "RollupAdminLogic",
    "RollupUserLogic",
    "ERC20Bridge",
    "ERC20Inbox",
    "EdgeChallengeManager",
    "OneStepProofEntry",
    "OneStepProver0",
    "OneStepProverMemory",
    "OneStepProverMath",
    "OneStepProverHostIo",
    "UpgradeExecutor",
    "ValidatorWalletCreator",
    "DeployHelper",
    "Reader4844",
)

#
# Infrastructure
#

TARGET_CONTRACT_VERSION = "v3.2.0"

# parent chain id -> officially deployed RollupCreator
WELL_KNOWN_ROLLUP_CREATORS = {
    1: {
        "address": "0x90D68B056c411015eaE3EC0b98AD94E2C91419F1",
        "version": "v3.1.0",
    },
    11155111: {
        "address": "0xfb774ea8A92ae528A596c8D90CBCF1BdBc4Cee79",
        "version": "v3.1.0",
    },
    42161: {
        "address": "0x79607f00e61E6d7C0E6330bd7451f73136042a5C",
        "version": "v3.1.0",
    },
    421614: {
        "address": "0xd2Ec8376B1dF436fAb18120E416d3F2BeC61275b",
        "version": "v3.1.0",
    },
}

# ArbSys precompile; present only on Arbitrum-based parent chains
ARB_SYS_ADDRESS = "0x0000000000000000000000000000000000000064"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#
# Gas
#

GWEI = 10**9
ETHER = 10**18

GAS_PRICE_BOOST_PERCENT = 150
MIN_GAS_PRICE = 2 * GWEI
GAS_LIMIT_BUFFER_PERCENT = 120
DEFAULT_DEPLOY_GAS_LIMIT = 10_000_000
MAX_ROLLUP_GAS_LIMIT = 15_000_000
DEFAULT_CALL_GAS_LIMIT = 500_000

RECEIPT_POLL_INTERVAL = 2
RECEIPT_TIMEOUT = 300

#
# Rollup defaults
#

DEFAULT_CONFIRM_PERIOD_BLOCKS = 45818  # ~1 week on Ethereum
DEFAULT_MAX_DATA_SIZE = 117964
DEFAULT_BASE_STAKE = ETHER // 10
DEFAULT_MINIMUM_ASSERTION_PERIOD = 75
DEFAULT_VALIDATOR_AFK_BLOCKS = 201600
DEFAULT_CHALLENGE_GRACE_PERIOD_BLOCKS = 14400
DEFAULT_MAX_FEE_PER_GAS_FOR_RETRYABLES = GWEI // 10
DEFAULT_INITIAL_ARBOS_VERSION = 51
REQUIRED_STAKE_TOKEN_BALANCE = ETHER // 10

# consensus-v32 machine
DEFAULT_WASM_MODULE_ROOT = "0x184884e1eb9fefdc158f6c8ac912bb183bf3cf83f0090317e0bc4ac5860baa39"

# BoLD challenge parameters
DEFAULT_LAYER_ZERO_BLOCK_EDGE_HEIGHT = 2**26
DEFAULT_LAYER_ZERO_BIG_STEP_EDGE_HEIGHT = 2**19
DEFAULT_LAYER_ZERO_SMALL_STEP_EDGE_HEIGHT = 2**23
DEFAULT_NUM_BIG_STEP_LEVEL = 1

DEFAULT_MAX_TIME_VARIATION = {
    "delayBlocks": 5760,
    "futureBlocks": 12,
    "delaySeconds": 86400,
    "futureSeconds": 3600,
}

#
# Data availability
#


class DataAvailabilityMode(str, Enum):
    CELESTIA = "celestia"
    ROLLUP = "rollup"
    ANYTRUST = "anytrust"

    @property
    def requires_external_provider(self) -> bool:
        return self is not DataAvailabilityMode.ROLLUP


DEFAULT_DATA_AVAILABILITY = DataAvailabilityMode.CELESTIA


#
# Signer
#

SIGNER_MAX_RETRIES = 3
SIGNER_INITIAL_BACKOFF = 1.0
SIGNER_MAX_BACKOFF = 10.0
SIGNER_HTTP_TIMEOUT = 30
SIGNER_RETRYABLE_RPC_CODES = range(-32099, -32000 + 1)

#
# Orchestrator
#

STALE_DEPLOYMENT_TIMEOUT = 30 * 60
STALE_DEPLOYMENT_MESSAGE = (
    "Deployment timed out - worker may have crashed. Re-run the deployment to resume."
)

#
# Output documents
#

ARTIFACT_TYPE_CHAIN_INFO = "chain_info"
ARTIFACT_TYPE_NODE_CONFIG = "node_config"
ARTIFACT_TYPE_CORE_CONTRACTS = "core_contracts"
