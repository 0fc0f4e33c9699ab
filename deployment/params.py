import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress

from deployment.abi import StructError, abi_type, build_value, check_encodable
from deployment.artifacts import ArtifactBundle
from deployment.constants import ZERO_ADDRESS
from deployment.utils import _load_yaml

LOGGER = logging.getLogger(__name__)

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_TYPE_KEY = "contract_type"
CONTRACT_CONDITION_KEY = "condition"

# Chain capabilities a planned contract may be conditioned on
BLOB_READER_CONDITION = "blob_reader"
KNOWN_CONDITIONS = frozenset({BLOB_READER_CONDITION})


class ResolutionState:
    """Addresses known at a point in a deployment, used to resolve variables."""

    def __init__(
        self,
        deployer: Optional[ChecksumAddress] = None,
        addresses: Optional[Dict[str, ChecksumAddress]] = None,
    ):
        self.deployer = deployer
        self.addresses = addresses if addresses is not None else dict()


class PlanContext(NamedTuple):
    """What a '$' reference inside one contract's constructor may point at."""

    planned: Tuple[str, ...]
    constants: Dict[str, Any]
    contract_name: str


#
# Variables
#


class Variable(ABC):
    PREFIX = "$"

    @abstractmethod
    def resolve(self, state: ResolutionState) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, value: Any) -> bool:
        return isinstance(value, str) and value.startswith(cls.PREFIX)

    @classmethod
    def parse(cls, raw: str, context: PlanContext) -> "Variable":
        """
        '$deployer' is the signing account, an upper-case name is a plan constant
        and anything else is the address of another planned contract.
        """
        name = raw[len(cls.PREFIX) :]
        if name == Deployer.NAME:
            return Deployer()
        if name.isupper():
            return PlanConstant(name, context)
        return ContractReference(name, context)


class Deployer(Variable):
    NAME = "deployer"

    def resolve(self, state: ResolutionState) -> Any:
        return state.deployer or ZERO_ADDRESS


class PlanConstant(Variable):
    def __init__(self, name: str, context: PlanContext):
        if name not in context.constants:
            raise ValueError(f"{context.contract_name}: undefined plan constant '{name}'")
        self.name = name
        self.value = context.constants[name]

    def resolve(self, state: ResolutionState) -> Any:
        return self.value


class ContractReference(Variable):
    def __init__(self, name: str, context: PlanContext):
        if name not in context.planned:
            raise ValueError(f"{context.contract_name}: references unplanned contract '{name}'")
        self.contract_name = name

    def resolve(self, state: ResolutionState) -> Any:
        # skipped or not-yet-deployed contracts are passed as the zero address
        return state.addresses.get(self.contract_name, ZERO_ADDRESS)


#
# Plan values
#


def _parse_value(value: Any, context: PlanContext) -> Any:
    if isinstance(value, list):
        return [_parse_value(item, context) for item in value]
    if isinstance(value, dict):
        return OrderedDict((key, _parse_value(item, context)) for key, item in value.items())
    if Variable.is_variable(value):
        return Variable.parse(value, context)
    return value


def _resolve_value(value: Any, state: ResolutionState) -> Any:
    if isinstance(value, Variable):
        return value.resolve(state)
    if isinstance(value, list):
        return [_resolve_value(item, state) for item in value]
    if isinstance(value, dict):
        return OrderedDict((key, _resolve_value(item, state)) for key, item in value.items())
    return value


def _references(value: Any) -> List[str]:
    if isinstance(value, ContractReference):
        return [value.contract_name]
    if isinstance(value, dict):
        value = list(value.values())
    if isinstance(value, list):
        return [name for item in value for name in _references(item)]
    return []


def _split_entry(entry: Any) -> Tuple[str, Dict[str, Any]]:
    """A phase entry is either a bare contract name or a single-key mapping of its settings."""
    if isinstance(entry, str):
        return entry, dict()
    if isinstance(entry, dict) and len(entry) == 1:
        ((name, settings),) = entry.items()
        return name, settings or dict()
    raise ValueError(f"Malformed plan entry: {entry!r}")


def validate_plan_config(config: Any) -> None:
    """Checks the overall shape of an infrastructure plan."""
    if not isinstance(config, dict):
        raise ValueError("Infrastructure plan is empty or not a mapping.")
    if not config.get("deployment"):
        raise ValueError("Infrastructure plan has no 'deployment' section.")

    phases = config.get("phases")
    if not phases:
        raise ValueError("Infrastructure plan has no 'phases'.")
    for phase in phases:
        if not isinstance(phase, dict) or not phase.get("name"):
            raise ValueError("Every phase requires a 'name'.")
        if not phase.get("contracts"):
            raise ValueError(f"Phase '{phase['name']}' has no contracts.")


def _shape_constructor_args(
    contract_name: str, abi_inputs: List[Dict[str, Any]], values: OrderedDict
) -> OrderedDict:
    """Matches resolved values to the constructor ABI by position and name."""
    if len(values) != len(abi_inputs):
        raise ConstructorParameters.Invalid(
            f"{contract_name} constructor takes {len(abi_inputs)} argument(s), "
            f"the plan gives {len(values)}"
        )

    shaped = OrderedDict()
    for position, (abi_input, (name, value)) in enumerate(zip(abi_inputs, values.items())):
        if abi_input["name"] != name:
            raise ConstructorParameters.Invalid(
                f"{contract_name} argument '{name}' at position {position} does not match "
                f"the ABI name '{abi_input['name']}'"
            )
        try:
            value = build_value(abi_input, value, path=f"{contract_name}.{name}")
        except StructError as e:
            raise ConstructorParameters.Invalid(str(e)) from e
        if not check_encodable(abi_input, value):
            raise ConstructorParameters.Invalid(
                f"{contract_name} argument '{name}' = {value!r} "
                f"does not match expected ABI type '{abi_type(abi_input)}'"
            )
        shaped[name] = value
    return shaped


class PlannedContract(NamedTuple):
    """A single contract instance in the deployment plan."""

    name: str
    contract_type: str
    phase: str
    condition: Optional[str]
    parameters: OrderedDict


class ConstructorParameters:
    """
    The phased infrastructure plan: which contracts to deploy, in what order,
    and the constructor arguments of each.

    Arguments are kept unresolved until deployment time, when '$' references
    are filled in from the addresses deployed so far.
    """

    class Invalid(Exception):
        """Raised when a plan does not fit the contracts it deploys."""

    def __init__(self, contracts: List[PlannedContract], name: str = "", constants=None):
        self.name = name
        self.constants = constants or dict()
        self._contracts = OrderedDict((contract.name, contract) for contract in contracts)
        self._check_dependency_order()

    @classmethod
    def from_yaml(cls, filepath: Path) -> "ConstructorParameters":
        return cls.from_config(_load_yaml(filepath))

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ConstructorParameters":
        validate_plan_config(config)
        constants = config.get("constants") or dict()

        entries = [
            (phase["name"],) + _split_entry(entry)
            for phase in config["phases"]
            for entry in phase["contracts"]
        ]
        planned = tuple(name for _, name, _ in entries)
        duplicates = sorted({name for name in planned if planned.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate contract name(s) in plan: {', '.join(duplicates)}")

        contracts = list()
        for phase, name, settings in entries:
            condition = settings.get(CONTRACT_CONDITION_KEY)
            if condition is not None and condition not in KNOWN_CONDITIONS:
                raise cls.Invalid(f"Unknown condition '{condition}' for {name}")
            context = PlanContext(planned=planned, constants=constants, contract_name=name)
            contracts.append(
                PlannedContract(
                    name=name,
                    contract_type=settings.get(CONTRACT_TYPE_KEY, name),
                    phase=phase,
                    condition=condition,
                    parameters=_parse_value(
                        settings.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY) or dict(), context
                    ),
                )
            )

        LOGGER.debug(
            "Loaded plan with %d contract(s) in %d phase(s)", len(contracts), len(config["phases"])
        )
        return cls(contracts, name=config["deployment"].get("name", ""), constants=constants)

    def _check_dependency_order(self) -> None:
        seen = set()
        for contract in self._contracts.values():
            for dependency in _references(contract.parameters):
                if dependency not in seen:
                    raise self.Invalid(
                        f"{contract.name} depends on {dependency}, which is not planned earlier"
                    )
            seen.add(contract.name)

    @property
    def contracts(self) -> List[PlannedContract]:
        return list(self._contracts.values())

    @property
    def phases(self) -> List[str]:
        return list(OrderedDict.fromkeys(contract.phase for contract in self.contracts))

    def __getitem__(self, contract_name: str) -> PlannedContract:
        return self._contracts[contract_name]

    def __contains__(self, contract_name: str) -> bool:
        return contract_name in self._contracts

    def validate(self, bundle: ArtifactBundle) -> None:
        """Eagerly checks every planned constructor call against the bundle ABIs."""
        state = ResolutionState()
        for contract in self.contracts:
            if contract.contract_type not in bundle:
                raise self.Invalid(
                    f"{contract.name}: contract type {contract.contract_type} "
                    "is not in the artifact bundle"
                )
            self.resolve(contract.name, bundle, state)

    def resolve(
        self, contract_name: str, bundle: ArtifactBundle, state: ResolutionState
    ) -> OrderedDict:
        """Resolves and ABI-shapes the constructor arguments for a single contract."""
        contract = self._contracts[contract_name]
        return _shape_constructor_args(
            contract.name,
            bundle[contract.contract_type].constructor_inputs,
            _resolve_value(contract.parameters, state),
        )
