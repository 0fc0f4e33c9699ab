import threading

import pytest

from deployment.exceptions import DeploymentCancelled
from deployment.utils import (
    boost_gas_price,
    buffer_gas_limit,
    check_cancelled,
    is_version_compatible,
    parse_version,
)


@pytest.mark.parametrize(
    "version,expected",
    [
        ("v3.2.0", (3, 2, 0)),
        ("v3.2.0-beta.0", (3, 2, 0)),
        ("3.1", (3, 1, 0)),
        ("V2", (2, 0, 0)),
        ("1.2.3+build.7", (1, 2, 3)),
        ("", (0, 0, 0)),
        ("latest", (0, 0, 0)),
    ],
)
def test_parse_version(version, expected):
    assert parse_version(version) == expected


def test_version_compatibility():
    assert is_version_compatible("v3.2.0", "v3.2.0")
    assert is_version_compatible("v3.2.0-beta.0", "v3.2.0")
    assert is_version_compatible("v4.0.0", "v3.2.0")
    assert not is_version_compatible("v3.1.0", "v3.2.0")
    assert not is_version_compatible("garbage", "v3.2.0")


def test_gas_price_boost_and_floor():
    assert boost_gas_price(10 * 10**9) == 15 * 10**9
    assert boost_gas_price(1) == 2 * 10**9


def test_gas_limit_buffer_and_cap():
    assert buffer_gas_limit(1_000_000) == 1_200_000
    assert buffer_gas_limit(20_000_000, cap=15_000_000) == 15_000_000


def test_check_cancelled():
    event = threading.Event()
    check_cancelled(None)
    check_cancelled(event)
    event.set()
    with pytest.raises(DeploymentCancelled):
        check_cancelled(event)
