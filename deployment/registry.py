import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from deployment.utils import _load_json

LOGGER = logging.getLogger(__name__)

ChainId = int
ContractName = str


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class RegistryEntry(NamedTuple):
    """Represents a single deployed contract of an infrastructure graph."""

    name: ContractName
    address: ChecksumAddress
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


@dataclass
class InfrastructureRecord:
    """The shared contract graph deployed once per parent chain."""

    parent_chain_id: ChainId
    rollup_creator_address: ChecksumAddress
    version: str
    bridge_creator_address: Optional[ChecksumAddress] = None
    deployment_tx_hash: Optional[str] = None
    deployed_by: Optional[ChecksumAddress] = None
    contracts: Dict[ContractName, RegistryEntry] = field(default_factory=dict)
    deployed_at: Optional[str] = None

    def to_json(self) -> dict:
        contracts = dict()
        for name in sorted(self.contracts):
            entry = self.contracts[name]
            contracts[name] = {
                "address": entry.address,
                "tx_hash": entry.tx_hash,
                "block_number": entry.block_number,
            }
        return {
            "rollup_creator": self.rollup_creator_address,
            "bridge_creator": self.bridge_creator_address,
            "version": self.version,
            "deployment_tx_hash": self.deployment_tx_hash,
            "deployed_by": self.deployed_by,
            "deployed_at": self.deployed_at,
            "contracts": contracts,
        }

    @classmethod
    def from_json(cls, chain_id: ChainId, data: dict) -> "InfrastructureRecord":
        contracts = dict()
        for name, artifacts in (data.get("contracts") or {}).items():
            contracts[name] = RegistryEntry(
                name=name,
                address=to_checksum_address(artifacts["address"]),
                tx_hash=artifacts.get("tx_hash"),
                block_number=artifacts.get("block_number"),
            )
        bridge_creator = data.get("bridge_creator")
        return cls(
            parent_chain_id=int(chain_id),
            rollup_creator_address=to_checksum_address(data["rollup_creator"]),
            bridge_creator_address=to_checksum_address(bridge_creator) if bridge_creator else None,
            version=data["version"],
            deployment_tx_hash=data.get("deployment_tx_hash"),
            deployed_by=data.get("deployed_by"),
            deployed_at=data.get("deployed_at"),
            contracts=contracts,
        )


def read_registry(filepath: Path) -> Dict[ChainId, InfrastructureRecord]:
    if not filepath.exists():
        return dict()
    data = _load_json(filepath)
    records = dict()
    for chain_id, record in data.items():
        records[int(chain_id)] = InfrastructureRecord.from_json(chain_id, record)
    return records


def write_registry(records: List[InfrastructureRecord], filepath: Path) -> Path:
    """Writes an infrastructure registry, one entry per parent chain id."""
    # Sort registry entries to enforce common order
    records = sorted(records, key=lambda record: record.parent_chain_id)
    data = {str(record.parent_chain_id): record.to_json() for record in records}

    # Create the parent directory if it does not exist
    filepath.parent.mkdir(parents=True, exist_ok=True)

    temp_filepath = filepath.with_suffix(".temp.json")
    with open(temp_filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)
    os.replace(temp_filepath, filepath)
    return filepath


class InfrastructureRegistry:
    """JSON file persistence for infrastructure records, keyed by parent chain id."""

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)
        self._lock = threading.Lock()

    def get(self, parent_chain_id: ChainId) -> Optional[InfrastructureRecord]:
        with self._lock:
            return read_registry(self.filepath).get(int(parent_chain_id))

    def all(self) -> List[InfrastructureRecord]:
        with self._lock:
            return list(read_registry(self.filepath).values())

    def upsert(self, record: InfrastructureRecord) -> Path:
        """Inserts or replaces the record for the record's parent chain."""
        if record.deployed_at is None:
            record.deployed_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            records = read_registry(self.filepath)
            if record.parent_chain_id in records:
                LOGGER.info(
                    "Replacing infrastructure record for chain %d (%s -> %s)",
                    record.parent_chain_id,
                    records[record.parent_chain_id].version,
                    record.version,
                )
            records[record.parent_chain_id] = record
            return write_registry(list(records.values()), self.filepath)
