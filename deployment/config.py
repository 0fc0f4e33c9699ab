import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address

from deployment.constants import (
    ARTIFACT_BASE_URL,
    ARTIFACT_VERSION,
    DEFAULT_BASE_STAKE,
    DEFAULT_DATA_AVAILABILITY,
    INFRASTRUCTURE_REGISTRY_FILEPATH,
    STALE_DEPLOYMENT_TIMEOUT,
    ZERO_ADDRESS,
    DataAvailabilityMode,
)
from deployment.exceptions import ConfigurationError
from deployment.utils import _load_yaml

LOGGER = logging.getLogger(__name__)

ENVIRONMENT_PREFIX = "ROLLUP_DEPLOYER_"

# canonical field -> accepted keys, in order of preference
CONFIG_ALIASES = {
    "parent_chain_id": ("l1_chain_id", "parent_chain_id"),
    "parent_chain_rpc": ("l1_rpc", "parent_chain_rpc"),
    "data_availability": ("da", "data_availability"),
    "owner": ("deployer_address", "owner"),
}


@dataclass
class SignerCredentials:
    """Connection details for the remote signer; mTLS and API key are exclusive."""

    endpoint: Optional[str] = None
    client_cert: Optional[str] = None
    client_key: Optional[str] = None
    ca_cert: Optional[str] = None
    api_key: Optional[str] = None

    @property
    def has_mtls(self) -> bool:
        return bool(self.client_cert and self.client_key)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    @property
    def is_empty(self) -> bool:
        return not (self.has_mtls or self.has_api_key)

    def __repr__(self) -> str:
        # never leak key material into logs
        mode = "mtls" if self.has_mtls else "api-key" if self.has_api_key else "none"
        return f"<SignerCredentials {mode} endpoint={self.endpoint}>"


@dataclass
class DeployConfig:
    chain_id: int
    chain_name: str
    parent_chain_id: int
    parent_chain_rpc: str
    owner: ChecksumAddress
    batch_posters: List[ChecksumAddress] = field(default_factory=list)
    validators: List[ChecksumAddress] = field(default_factory=list)
    stake_token: ChecksumAddress = ZERO_ADDRESS
    base_stake: int = DEFAULT_BASE_STAKE
    data_availability: DataAvailabilityMode = DEFAULT_DATA_AVAILABILITY
    native_token: ChecksumAddress = ZERO_ADDRESS
    confirm_period_blocks: Optional[int] = None
    max_data_size: Optional[int] = None
    deploy_factories_to_l2: bool = False
    credentials: SignerCredentials = field(default_factory=SignerCredentials)


def _first_of(raw: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, "", 0):
            return value
    return None


def _address(name: str, value: Any) -> ChecksumAddress:
    if not isinstance(value, str) or not is_address(value):
        raise ConfigurationError(f"{name}: invalid address {value!r}")
    return to_checksum_address(value)


def _addresses(name: str, values: Any) -> List[ChecksumAddress]:
    if not isinstance(values, (list, tuple)):
        raise ConfigurationError(f"{name}: expected a list of addresses")
    return [_address(name, value) for value in values]


def _integer(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name}: expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name}: expected an integer, got {value!r}") from None


def _data_availability(value: Any) -> DataAvailabilityMode:
    if value is None:
        return DEFAULT_DATA_AVAILABILITY
    try:
        return DataAvailabilityMode(str(value).lower())
    except ValueError:
        options = ", ".join(mode.value for mode in DataAvailabilityMode)
        raise ConfigurationError(
            f"invalid data availability mode {value!r} (expected one of {options})"
        ) from None


def normalize_deploy_config(
    raw: Mapping[str, Any],
    credentials: Optional[SignerCredentials] = None,
) -> DeployConfig:
    """
    Builds a DeployConfig from a stored deployment payload.

    Accepts both historical field names for the parent chain id and RPC, the DA mode
    and the owner, and fills in the documented defaults:
    batch posters and validators default to [owner], stake token to the zero address,
    base stake to 0.1 ether and data availability to celestia.
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationError("deployment config must be a JSON object")

    chain_id = raw.get("chain_id")
    if not chain_id:
        raise ConfigurationError("chain_id is required")
    chain_id = _integer("chain_id", chain_id)

    parent_chain_rpc = _first_of(raw, CONFIG_ALIASES["parent_chain_rpc"])
    if not parent_chain_rpc:
        raise ConfigurationError("parent chain RPC URL is required (l1_rpc or parent_chain_rpc)")

    parent_chain_id = _first_of(raw, CONFIG_ALIASES["parent_chain_id"])
    if not parent_chain_id:
        raise ConfigurationError("parent chain ID is required (l1_chain_id or parent_chain_id)")
    parent_chain_id = _integer("parent_chain_id", parent_chain_id)

    owner = _first_of(raw, CONFIG_ALIASES["owner"])
    if not owner:
        raise ConfigurationError("deployer_address is required")
    owner = _address("deployer_address", owner)

    batch_posters = _addresses("batch_posters", raw.get("batch_posters") or [owner])
    validators = _addresses("validators", raw.get("validators") or [owner])

    stake_token = raw.get("stake_token") or ZERO_ADDRESS
    native_token = raw.get("native_token") or ZERO_ADDRESS

    base_stake = raw.get("base_stake")
    if base_stake in (None, ""):
        base_stake = DEFAULT_BASE_STAKE
    else:
        base_stake = _integer("base_stake", base_stake)
    if base_stake <= 0:
        raise ConfigurationError("base_stake must be positive")

    confirm_period_blocks = raw.get("confirm_period_blocks")
    max_data_size = raw.get("max_data_size")

    return DeployConfig(
        chain_id=chain_id,
        chain_name=raw.get("chain_name") or f"chain-{chain_id}",
        parent_chain_id=parent_chain_id,
        parent_chain_rpc=str(parent_chain_rpc),
        owner=owner,
        batch_posters=batch_posters,
        validators=validators,
        stake_token=_address("stake_token", stake_token),
        base_stake=base_stake,
        data_availability=_data_availability(_first_of(raw, CONFIG_ALIASES["data_availability"])),
        native_token=_address("native_token", native_token),
        confirm_period_blocks=(
            _integer("confirm_period_blocks", confirm_period_blocks)
            if confirm_period_blocks
            else None
        ),
        max_data_size=_integer("max_data_size", max_data_size) if max_data_size else None,
        deploy_factories_to_l2=_boolean(
            "deploy_factories_to_l2", raw.get("deploy_factories_to_l2") or False
        ),
        credentials=credentials or SignerCredentials(),
    )


def embedded_credentials(raw: Mapping[str, Any]) -> SignerCredentials:
    """Signer credentials carried inside a stored deployment payload (bootstrap and tests)."""
    return SignerCredentials(
        endpoint=raw.get("signer_endpoint"),
        client_cert=raw.get("client_cert"),
        client_key=raw.get("client_key"),
        ca_cert=raw.get("ca_cert"),
        api_key=raw.get("api_key"),
    )


#
# Orchestrator settings
#


@dataclass
class OrchestratorSettings:
    """Process-wide settings for the deployment orchestrator."""

    signer_endpoint: Optional[str] = None
    artifact_source: str = ARTIFACT_BASE_URL
    artifact_version: str = ARTIFACT_VERSION
    artifact_cache_dir: Optional[Path] = None
    verify_checksums: bool = True
    infrastructure_registry: Path = INFRASTRUCTURE_REGISTRY_FILEPATH
    database: Optional[Path] = None
    stale_after: float = STALE_DEPLOYMENT_TIMEOUT

    @classmethod
    def _coerce(cls, values: Mapping[str, Any]) -> Dict[str, Any]:
        known = {f.name: f for f in dataclasses.fields(cls)}
        unknown = set(values) - set(known)
        if unknown:
            raise ConfigurationError(f"unknown setting(s): {', '.join(sorted(unknown))}")

        coerced = dict()
        for name, value in values.items():
            if value is None:
                coerced[name] = None
            elif name in ("artifact_cache_dir", "infrastructure_registry", "database"):
                coerced[name] = Path(value)
            elif name == "verify_checksums":
                coerced[name] = value if isinstance(value, bool) else _boolean(name, value)
            elif name == "stale_after":
                try:
                    coerced[name] = float(value)
                except (TypeError, ValueError):
                    raise ConfigurationError(f"{name}: expected a number, got {value!r}") from None
            else:
                coerced[name] = str(value)
        return coerced

    @classmethod
    def from_yaml(cls, filepath: Path) -> "OrchestratorSettings":
        config = _load_yaml(filepath) or dict()
        if not isinstance(config, dict):
            raise ConfigurationError(f"{filepath}: settings file must be a mapping")
        LOGGER.debug("Loaded orchestrator settings from %s", filepath)
        return cls(**cls._coerce(config))

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "OrchestratorSettings":
        """Returns a copy overridden by ROLLUP_DEPLOYER_* environment variables."""
        environ = os.environ if environ is None else environ
        overrides = dict()
        for f in dataclasses.fields(self):
            key = f"{ENVIRONMENT_PREFIX}{f.name.upper()}"
            if key in environ:
                overrides[f.name] = environ[key]
        return dataclasses.replace(self, **self._coerce(overrides))

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        filepath: Optional[Path] = None,
    ) -> "OrchestratorSettings":
        base = cls.from_yaml(filepath) if filepath else cls()
        return base.with_env(environ)


def _boolean(name: str, value: Any) -> bool:
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name}: expected a boolean, got {value!r}")
