import json
import logging
import re
import threading
from pathlib import Path
from typing import Optional, Tuple

import yaml

from deployment.constants import (
    GAS_LIMIT_BUFFER_PERCENT,
    GAS_PRICE_BOOST_PERCENT,
    MIN_GAS_PRICE,
)
from deployment.exceptions import DeploymentCancelled

_VERSION_PATTERN = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # web3 request logging is extremely chatty at debug level
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_version(version: str) -> Tuple[int, int, int]:
    """
    Parses 'v3.2.0-beta.0' style versions into (major, minor, patch).
    Pre-release and build suffixes are ignored; unparsable versions are (0, 0, 0).
    """
    version = (version or "").strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    version = re.split(r"[-+]", version, maxsplit=1)[0]
    match = _VERSION_PATTERN.match(version)
    if not match:
        return 0, 0, 0
    return tuple(int(part or 0) for part in match.groups())


def is_version_compatible(deployed: str, target: str) -> bool:
    """Returns True if the deployed version is at least the target version."""
    return parse_version(deployed) >= parse_version(target)


def boost_gas_price(gas_price: int) -> int:
    """Boosts a suggested gas price by 50% with a 2 gwei floor."""
    boosted = gas_price * GAS_PRICE_BOOST_PERCENT // 100
    return max(boosted, MIN_GAS_PRICE)


def buffer_gas_limit(estimate: int, cap: Optional[int] = None) -> int:
    """Adds a 20% safety margin to a gas estimate, optionally clamped to a ceiling."""
    gas_limit = estimate * GAS_LIMIT_BUFFER_PERCENT // 100
    if cap is not None and gas_limit > cap:
        return cap
    return gas_limit


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise DeploymentCancelled("deployment cancelled")
