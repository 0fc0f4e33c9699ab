import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from eth_abi import decode, encode, is_encodable
from eth_utils import to_checksum_address
from eth_utils.abi import (
    collapse_if_tuple,
    event_abi_to_log_topic,
    function_abi_to_4byte_selector,
)
from hexbytes import HexBytes

from deployment.constants import ZERO_ADDRESS

LOGGER = logging.getLogger(__name__)

_ARRAY_SUFFIX = re.compile(r"(\[\d*\])$")

ABIElement = Dict[str, Any]

# Minimal fragments for calls against contracts that are not part of the artifact bundle
UPGRADE_EXECUTOR_EXECUTE_CALL = {
    "type": "function",
    "name": "executeCall",
    "stateMutability": "payable",
    "inputs": [
        {"name": "target", "type": "address"},
        {"name": "targetCallData", "type": "bytes"},
    ],
    "outputs": [],
}

WETH_BALANCE_OF = {
    "type": "function",
    "name": "balanceOf",
    "stateMutability": "view",
    "inputs": [{"name": "account", "type": "address"}],
    "outputs": [{"name": "", "type": "uint256"}],
}

WETH_DEPOSIT = {
    "type": "function",
    "name": "deposit",
    "stateMutability": "payable",
    "inputs": [],
    "outputs": [],
}

ROLLUP_CREATED_EVENT = {
    "type": "event",
    "name": "RollupCreated",
    "anonymous": False,
    "inputs": [
        {"name": "rollupAddress", "type": "address", "indexed": True},
        {"name": "nativeToken", "type": "address", "indexed": True},
        {"name": "inboxAddress", "type": "address", "indexed": False},
        {"name": "outbox", "type": "address", "indexed": False},
        {"name": "rollupEventInbox", "type": "address", "indexed": False},
        {"name": "challengeManager", "type": "address", "indexed": False},
        {"name": "adminProxy", "type": "address", "indexed": False},
        {"name": "sequencerInbox", "type": "address", "indexed": False},
        {"name": "bridge", "type": "address", "indexed": False},
        {"name": "upgradeExecutor", "type": "address", "indexed": False},
        {"name": "validatorWalletCreator", "type": "address", "indexed": False},
    ],
}


class StructError(ValueError):
    """Raised when a value cannot be shaped into an ABI tuple."""


def abi_type(abi_input: ABIElement) -> str:
    """Canonical type string of an ABI input, with tuples collapsed to '(t1,t2,...)'."""
    return collapse_if_tuple(abi_input)


def zero_value(abi_input: ABIElement) -> Any:
    """The zero value for an ABI input type."""
    type_str = abi_input["type"]
    if _ARRAY_SUFFIX.search(type_str):
        return []
    if type_str == "tuple":
        return tuple(zero_value(component) for component in abi_input.get("components", []))
    if type_str == "address":
        return ZERO_ADDRESS
    if type_str == "bool":
        return False
    if type_str == "string":
        return ""
    if type_str == "bytes":
        return b""
    if type_str.startswith("bytes"):
        return b"\x00" * int(type_str[len("bytes"):])
    if type_str.startswith(("uint", "int")):
        return 0
    raise StructError(f"no zero value for ABI type '{type_str}'")


def build_value(abi_input: ABIElement, value: Any, path: str = "", strict: bool = True) -> Any:
    """
    Shapes a (possibly nested) mapping into the tuple layout an ABI input expects.

    Struct members are matched by component name. With strict=False, members without a
    supplied value take the zero value of their type; with strict=True they are an error.
    """
    path = path or abi_input.get("name", "")
    type_str = abi_input["type"]

    if type_str.startswith("tuple") and _ARRAY_SUFFIX.search(type_str):
        element = dict(abi_input, type=_ARRAY_SUFFIX.sub("", type_str))
        return [
            build_value(element, item, path=f"{path}[{index}]", strict=strict)
            for index, item in enumerate(value or [])
        ]

    if type_str != "tuple":
        return value

    if isinstance(value, (list, tuple)):
        # already positional
        return tuple(value)
    if not isinstance(value, Mapping):
        raise StructError(f"{path}: expected a mapping for struct, got {type(value).__name__}")

    components = abi_input.get("components", [])
    names = {component["name"] for component in components}
    unknown = set(value) - names
    if unknown:
        raise StructError(f"{path}: unknown struct member(s) {', '.join(sorted(unknown))}")

    shaped = list()
    for component in components:
        member_path = f"{path}.{component['name']}"
        if component["name"] in value:
            shaped.append(
                build_value(component, value[component["name"]], path=member_path, strict=strict)
            )
        elif strict:
            raise StructError(f"{member_path}: missing struct member")
        else:
            LOGGER.debug("Using zero value for %s", member_path)
            shaped.append(zero_value(component))
    return tuple(shaped)


def check_encodable(abi_input: ABIElement, value: Any) -> bool:
    return is_encodable(abi_type(abi_input), value)


def encode_function_call(function_abi: ABIElement, args: Sequence[Any]) -> HexBytes:
    """Encodes 4-byte selector plus positional arguments for a function ABI."""
    inputs = function_abi.get("inputs", [])
    if len(args) != len(inputs):
        raise StructError(
            f"{function_abi['name']} takes {len(inputs)} argument(s), got {len(args)}"
        )
    types = [abi_type(abi_input) for abi_input in inputs]
    selector = function_abi_to_4byte_selector(function_abi)
    return HexBytes(selector + encode(types, list(args)))


def decode_function_result(function_abi: ABIElement, data: bytes) -> List[Any]:
    types = [abi_type(output) for output in function_abi.get("outputs", [])]
    return list(decode(types, bytes(data)))


def event_topic(event_abi: ABIElement) -> HexBytes:
    return HexBytes(event_abi_to_log_topic(event_abi))


def decode_event_log(event_abi: ABIElement, log: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Decodes a log against an event ABI, keyed by the event topic hash.
    Returns None if the log belongs to a different event.
    """
    topics = [HexBytes(topic) for topic in log.get("topics", [])]
    if not topics or topics[0] != event_topic(event_abi):
        return None

    indexed = [item for item in event_abi["inputs"] if item.get("indexed")]
    non_indexed = [item for item in event_abi["inputs"] if not item.get("indexed")]
    if len(topics) < len(indexed) + 1:
        raise ValueError(
            f"{event_abi['name']} log has {len(topics)} topic(s), expected {len(indexed) + 1}"
        )

    values = dict()
    for item, topic in zip(indexed, topics[1:]):
        (values[item["name"]],) = decode([abi_type(item)], bytes(topic))

    data = HexBytes(log.get("data", b""))
    decoded = decode([abi_type(item) for item in non_indexed], bytes(data))
    for item, value in zip(non_indexed, decoded):
        values[item["name"]] = value

    for item in event_abi["inputs"]:
        if item["type"] == "address":
            values[item["name"]] = to_checksum_address(values[item["name"]])
    return values
