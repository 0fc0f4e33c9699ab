from pathlib import Path

import pytest
import yaml

from deployment.config import (
    OrchestratorSettings,
    SignerCredentials,
    embedded_credentials,
    normalize_deploy_config,
)
from deployment.constants import (
    ARTIFACT_VERSION,
    DEFAULT_BASE_STAKE,
    ZERO_ADDRESS,
    DataAvailabilityMode,
)
from deployment.exceptions import ConfigurationError
from tests.conftest import (
    BATCH_POSTER,
    CHILD_CHAIN_ID,
    DEPLOYER_ADDRESS,
    PARENT_CHAIN_ID,
    PARENT_RPC,
)


def test_defaults(deploy_request):
    del deploy_request["batch_posters"]
    del deploy_request["chain_name"]
    del deploy_request["da"]

    config = normalize_deploy_config(deploy_request)

    assert config.chain_id == CHILD_CHAIN_ID
    assert config.chain_name == f"chain-{CHILD_CHAIN_ID}"
    assert config.parent_chain_id == PARENT_CHAIN_ID
    assert config.parent_chain_rpc == PARENT_RPC
    assert config.owner == DEPLOYER_ADDRESS
    assert config.batch_posters == [DEPLOYER_ADDRESS]
    assert config.validators == [DEPLOYER_ADDRESS]
    assert config.stake_token == ZERO_ADDRESS
    assert config.native_token == ZERO_ADDRESS
    assert config.base_stake == DEFAULT_BASE_STAKE
    assert config.data_availability is DataAvailabilityMode.CELESTIA
    assert config.confirm_period_blocks is None
    assert config.credentials.is_empty


def test_alternate_field_names():
    config = normalize_deploy_config(
        {
            "chain_id": CHILD_CHAIN_ID,
            "parent_chain_id": PARENT_CHAIN_ID,
            "parent_chain_rpc": PARENT_RPC,
            "owner": DEPLOYER_ADDRESS.lower(),
            "data_availability": "ROLLUP",
            "batch_posters": [BATCH_POSTER.lower()],
            "base_stake": "5",
        }
    )

    assert config.parent_chain_id == PARENT_CHAIN_ID
    assert config.parent_chain_rpc == PARENT_RPC
    assert config.owner == DEPLOYER_ADDRESS
    assert config.batch_posters == [BATCH_POSTER]
    assert config.data_availability is DataAvailabilityMode.ROLLUP
    assert config.base_stake == 5


def test_legacy_field_names_win(deploy_request):
    deploy_request["parent_chain_id"] = 1
    config = normalize_deploy_config(deploy_request)
    assert config.parent_chain_id == PARENT_CHAIN_ID


@pytest.mark.parametrize(
    "field,message",
    [
        ("chain_id", "chain_id is required"),
        ("l1_rpc", "parent chain RPC URL is required"),
        ("l1_chain_id", "parent chain ID is required"),
        ("deployer_address", "deployer_address is required"),
    ],
)
def test_required_fields(deploy_request, field, message):
    del deploy_request[field]
    with pytest.raises(ConfigurationError, match=message):
        normalize_deploy_config(deploy_request)


@pytest.mark.parametrize(
    "field,value",
    [
        ("deployer_address", "0x1234"),
        ("stake_token", "not-an-address"),
        ("batch_posters", "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"),
        ("base_stake", -1),
        ("da", "carrier-pigeon"),
        ("chain_id", "forty-two"),
        ("deploy_factories_to_l2", "maybe"),
    ],
)
def test_invalid_values(deploy_request, field, value):
    deploy_request[field] = value
    with pytest.raises(ConfigurationError):
        normalize_deploy_config(deploy_request)


@pytest.mark.parametrize(
    "value,expected",
    [(True, True), ("true", True), ("1", True), ("false", False), ("no", False), (None, False)],
)
def test_deploy_factories_flag(deploy_request, value, expected):
    deploy_request["deploy_factories_to_l2"] = value
    assert normalize_deploy_config(deploy_request).deploy_factories_to_l2 is expected


def test_embedded_credentials():
    credentials = embedded_credentials(
        {"signer_endpoint": "https://signer", "client_cert": "CERT", "client_key": "KEY"}
    )
    assert credentials.has_mtls
    assert not credentials.has_api_key
    assert "KEY" not in repr(credentials)
    assert embedded_credentials({"api_key": "secret"}).has_api_key
    assert SignerCredentials().is_empty


def test_settings_from_yaml_and_environment(tmp_path):
    filepath = tmp_path / "settings.yml"
    with open(filepath, "w") as file:
        yaml.safe_dump(
            {
                "signer_endpoint": "https://signer.test",
                "database": str(tmp_path / "deployments.db"),
                "stale_after": 60,
            },
            file,
        )

    settings = OrchestratorSettings.from_env(
        environ={
            "ROLLUP_DEPLOYER_STALE_AFTER": "120",
            "ROLLUP_DEPLOYER_VERIFY_CHECKSUMS": "false",
        },
        filepath=filepath,
    )

    assert settings.signer_endpoint == "https://signer.test"
    assert settings.database == tmp_path / "deployments.db"
    assert settings.stale_after == 120.0
    assert settings.verify_checksums is False
    assert settings.artifact_version == ARTIFACT_VERSION


def test_settings_reject_unknown_keys(tmp_path):
    filepath = tmp_path / "settings.yml"
    filepath.write_text("signer_url: https://signer.test\n")
    with pytest.raises(ConfigurationError, match="signer_url"):
        OrchestratorSettings.from_yaml(filepath)


def test_settings_reject_bad_booleans():
    with pytest.raises(ConfigurationError):
        OrchestratorSettings().with_env({"ROLLUP_DEPLOYER_VERIFY_CHECKSUMS": "maybe"})


def test_settings_defaults():
    settings = OrchestratorSettings.from_env(environ={})
    assert settings.database is None
    assert isinstance(settings.infrastructure_registry, Path)
