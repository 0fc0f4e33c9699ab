import click

from deployment.constants import ARTIFACT_BASE_URL, ARTIFACT_VERSION
from deployment.types import ChainId, ChecksumAddress

parent_chain_id_option = click.option(
    "--parent-chain-id",
    "-c",
    help="Chain ID of the parent chain",
    type=ChainId(),
    required=True,
)

parent_rpc_option = click.option(
    "--parent-rpc",
    "-r",
    help="RPC URL of the parent chain",
    envvar="L1_RPC_URL",
    required=True,
)

deployer_option = click.option(
    "--deployer",
    help="Address the remote signer signs for",
    type=ChecksumAddress(),
    required=False,
)

signer_endpoint_option = click.option(
    "--signer-endpoint",
    help="JSON-RPC endpoint of the remote signer",
    envvar="SIGNER_ENDPOINT",
    required=False,
)

client_cert_option = click.option(
    "--client-cert",
    help="PEM client certificate for the remote signer",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)

client_key_option = click.option(
    "--client-key",
    help="PEM client key for the remote signer",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)

ca_cert_option = click.option(
    "--ca-cert",
    help="PEM CA bundle used to verify the remote signer",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)

api_key_option = click.option(
    "--api-key",
    help="API key for the remote signer",
    envvar="SIGNER_API_KEY",
    required=False,
)

private_key_option = click.option(
    "--private-key",
    help="Sign locally with this key instead of a remote signer (development only)",
    envvar="DEPLOYER_PRIVATE_KEY",
    required=False,
)

artifact_source_option = click.option(
    "--artifact-source",
    help="Base URL or local directory of the contract artifacts",
    default=ARTIFACT_BASE_URL,
    show_default=True,
)

artifact_version_option = click.option(
    "--artifact-version",
    help="Contract artifact version",
    default=ARTIFACT_VERSION,
    show_default=True,
)

registry_filepath_option = click.option(
    "--registry-filepath",
    help="Infrastructure registry JSON file",
    type=click.Path(dir_okay=False),
    required=False,
)

database_option = click.option(
    "--database",
    help="SQLite database holding deployment records",
    type=click.Path(dir_okay=False),
    required=False,
)

settings_option = click.option(
    "--settings",
    "settings_filepath",
    help="Orchestrator settings YAML file",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)

verbose_option = click.option(
    "--verbose", "-v", help="Enable debug logging", is_flag=True, default=False
)
