import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from deployment.artifacts import ArtifactBundle
from deployment.chain import ParentChainClient
from deployment.constants import (
    ARB_SYS_ADDRESS,
    NITRO_INFRASTRUCTURE_PLAN,
    TARGET_CONTRACT_VERSION,
    WELL_KNOWN_ROLLUP_CREATORS,
)
from deployment.exceptions import DeploymentError
from deployment.params import BLOB_READER_CONDITION, ConstructorParameters, ResolutionState
from deployment.registry import InfrastructureRecord, InfrastructureRegistry, RegistryEntry
from deployment.signers import TransactionSigner
from deployment.transactor import SubmittedTransaction, TransactionCallback, Transactor
from deployment.utils import check_cancelled, is_version_compatible

LOGGER = logging.getLogger(__name__)

ROLLUP_CREATOR = "RollupCreator"
BRIDGE_CREATOR = "BridgeCreator"

# called with the resolved constructor arguments before each contract is deployed
ConfirmCallback = Callable[[Dict[str, Any], str], None]

ClientFactory = Callable[[str], ParentChainClient]


class InfrastructureSource(str, Enum):
    REGISTRY = "registry"
    WELL_KNOWN = "well-known"
    DEPLOYED = "deployed"


@dataclass
class InfrastructureResult:
    rollup_creator_address: ChecksumAddress
    version: str
    source: InfrastructureSource
    bridge_creator_address: Optional[ChecksumAddress] = None
    deployment_tx_hash: Optional[str] = None
    contracts: Dict[str, RegistryEntry] = field(default_factory=dict)
    transactions: List[SubmittedTransaction] = field(default_factory=list)

    @property
    def already_deployed(self) -> bool:
        return self.source is not InfrastructureSource.DEPLOYED

    @property
    def addresses(self) -> Dict[str, ChecksumAddress]:
        return {name: entry.address for name, entry in self.contracts.items()}

    @classmethod
    def from_record(cls, record: InfrastructureRecord) -> "InfrastructureResult":
        return cls(
            rollup_creator_address=record.rollup_creator_address,
            bridge_creator_address=record.bridge_creator_address,
            version=record.version,
            source=InfrastructureSource.REGISTRY,
            deployment_tx_hash=record.deployment_tx_hash,
            contracts=dict(record.contracts),
        )


class InfrastructureDeployer:
    """
    Ensures the shared Nitro contract graph exists on a parent chain.

    Reuses a compatible registry record or a well-known official deployment when possible,
    otherwise deploys the phased plan in dependency order and records the result.
    """

    def __init__(
        self,
        bundle: ArtifactBundle,
        signer: TransactionSigner,
        registry: Optional[InfrastructureRegistry] = None,
        plan: Optional[ConstructorParameters] = None,
        client_factory: ClientFactory = ParentChainClient.from_rpc,
        target_version: str = TARGET_CONTRACT_VERSION,
        well_known: Optional[Dict[int, Dict[str, str]]] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.bundle = bundle
        self.signer = signer
        self.registry = registry
        self.plan = plan or ConstructorParameters.from_yaml(NITRO_INFRASTRUCTURE_PLAN)
        self.client_factory = client_factory
        self.target_version = target_version
        self.well_known = WELL_KNOWN_ROLLUP_CREATORS if well_known is None else well_known
        self.confirm = confirm

        # fail before any transaction if the plan does not fit the bundle
        self.plan.validate(self.bundle)

    def ensure(
        self,
        parent_chain_id: int,
        parent_rpc: str,
        cancel_event: Optional[threading.Event] = None,
        on_transaction: Optional[TransactionCallback] = None,
    ) -> InfrastructureResult:
        record = self._find_registry_record(parent_chain_id)
        if record is not None:
            LOGGER.info(
                "Reusing infrastructure on chain %d from registry: RollupCreator %s (%s)",
                parent_chain_id,
                record.rollup_creator_address,
                record.version,
            )
            return InfrastructureResult.from_record(record)

        well_known = self._find_well_known(parent_chain_id)
        if well_known is not None:
            return well_known

        check_cancelled(cancel_event)
        client = self.client_factory(parent_rpc)
        client.verify_chain_id(parent_chain_id)

        result = self._deploy(client, cancel_event=cancel_event, on_transaction=on_transaction)
        self._persist(parent_chain_id, result)
        return result

    def _find_registry_record(self, parent_chain_id: int) -> Optional[InfrastructureRecord]:
        if self.registry is None:
            return None
        try:
            record = self.registry.get(parent_chain_id)
        except (OSError, ValueError, KeyError) as e:
            raise DeploymentError(f"read infrastructure registry: {e}") from e
        if record is None:
            return None
        if not is_version_compatible(record.version, self.bundle.version):
            LOGGER.info(
                "Registry infrastructure on chain %d is %s, older than artifacts %s; redeploying",
                parent_chain_id,
                record.version,
                self.bundle.version,
            )
            return None
        return record

    def _find_well_known(self, parent_chain_id: int) -> Optional[InfrastructureResult]:
        known = self.well_known.get(parent_chain_id)
        if known is None:
            return None
        if not is_version_compatible(known["version"], self.target_version):
            LOGGER.info(
                "Well-known RollupCreator %s on chain %d is %s, below required %s; not using it",
                known["address"],
                parent_chain_id,
                known["version"],
                self.target_version,
            )
            return None

        address = to_checksum_address(known["address"])
        LOGGER.info("Using well-known RollupCreator %s on chain %d", address, parent_chain_id)
        return InfrastructureResult(
            rollup_creator_address=address,
            version=known["version"],
            source=InfrastructureSource.WELL_KNOWN,
            contracts={ROLLUP_CREATOR: RegistryEntry(name=ROLLUP_CREATOR, address=address)},
        )

    def _conditions(self, client: ParentChainClient) -> Dict[str, bool]:
        """Probes chain capabilities that decide conditional contracts."""
        # Arbitrum-based parents expose ArbSys and have no native blob support
        is_arbitrum_parent = len(client.get_code(ARB_SYS_ADDRESS)) > 0
        LOGGER.info(
            "Parent chain %s ArbSys precompile; blob reader %s",
            "exposes" if is_arbitrum_parent else "lacks",
            "skipped" if is_arbitrum_parent else "required",
        )
        return {BLOB_READER_CONDITION: not is_arbitrum_parent}

    def _deploy(
        self,
        client: ParentChainClient,
        cancel_event: Optional[threading.Event] = None,
        on_transaction: Optional[TransactionCallback] = None,
    ) -> InfrastructureResult:
        transactor = Transactor(client, self.signer, on_transaction=on_transaction)
        state = ResolutionState(deployer=self.signer.address)
        conditions = self._conditions(client)
        deployed = dict()

        for phase in self.plan.phases:
            LOGGER.info("Deploying infrastructure phase '%s'", phase)
            for contract in self.plan.contracts:
                if contract.phase != phase:
                    continue
                check_cancelled(cancel_event)
                if contract.condition and not conditions.get(contract.condition, False):
                    LOGGER.info("Skipping %s (%s not required)", contract.name, contract.condition)
                    continue

                params = self.plan.resolve(contract.name, self.bundle, state)
                if self.confirm is not None:
                    self.confirm(params, contract.name)
                artifact = self.bundle[contract.contract_type]
                entry = transactor.deploy(
                    contract.name,
                    artifact.deployment_data(*params.values()),
                    cancel_event=cancel_event,
                )
                state.addresses[contract.name] = entry.address
                deployed[contract.name] = entry

        rollup_creator = deployed[ROLLUP_CREATOR]
        bridge_creator = deployed.get(BRIDGE_CREATOR)
        LOGGER.info(
            "Infrastructure deployed: %d contracts, RollupCreator %s",
            len(deployed),
            rollup_creator.address,
        )
        return InfrastructureResult(
            rollup_creator_address=rollup_creator.address,
            bridge_creator_address=bridge_creator.address if bridge_creator else None,
            version=self.bundle.version,
            source=InfrastructureSource.DEPLOYED,
            deployment_tx_hash=rollup_creator.tx_hash,
            contracts=deployed,
            transactions=list(transactor.transactions),
        )

    def _persist(self, parent_chain_id: int, result: InfrastructureResult) -> Optional[Path]:
        if self.registry is None:
            return None
        record = InfrastructureRecord(
            parent_chain_id=parent_chain_id,
            rollup_creator_address=result.rollup_creator_address,
            bridge_creator_address=result.bridge_creator_address,
            version=result.version,
            deployment_tx_hash=result.deployment_tx_hash,
            deployed_by=self.signer.address,
            contracts=dict(result.contracts),
        )
        try:
            filepath = self.registry.upsert(record)
        except (OSError, ValueError) as e:
            # contracts are live on-chain regardless
            LOGGER.error(
                "Failed to persist infrastructure record for chain %d: %s", parent_chain_id, e
            )
            return None
        LOGGER.info("Infrastructure record written to %s", filepath)
        return filepath
