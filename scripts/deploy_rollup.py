#!/usr/bin/python3

import json
from pathlib import Path

import click

from deployment.artifacts import ArtifactStore
from deployment.config import normalize_deploy_config
from deployment.constants import INFRASTRUCTURE_REGISTRY_FILEPATH
from deployment.exceptions import DeploymentError
from deployment.infrastructure import InfrastructureDeployer
from deployment.options import (
    api_key_option,
    artifact_source_option,
    artifact_version_option,
    ca_cert_option,
    client_cert_option,
    client_key_option,
    private_key_option,
    registry_filepath_option,
    signer_endpoint_option,
    verbose_option,
)
from deployment.outputs import generate_outputs
from deployment.registry import InfrastructureRegistry
from deployment.rollup import RollupDeployer
from deployment.signers import signer_from_options
from deployment.types import ChecksumAddress, DataAvailability
from deployment.utils import _load_json, setup_logging

OUTPUT_JSON_FORMAT = {"indent": 2}


@click.command()
@click.option(
    "--config",
    "config_filepath",
    help="JSON deployment request (chain_id, l1_chain_id, l1_rpc, deployer_address, ...)",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
)
@click.option(
    "--rollup-creator",
    help="Use this RollupCreator instead of ensuring the infrastructure",
    type=ChecksumAddress(),
    required=False,
)
@click.option(
    "--data-availability",
    "--da",
    "data_availability",
    help="Override the data availability mode of the request",
    type=DataAvailability(),
    required=False,
)
@click.option(
    "--output-dir",
    help="Directory the output documents are written to",
    type=click.Path(file_okay=False),
    default="artifacts",
    show_default=True,
)
@signer_endpoint_option
@client_cert_option
@client_key_option
@ca_cert_option
@api_key_option
@private_key_option
@artifact_source_option
@artifact_version_option
@registry_filepath_option
@verbose_option
def cli(
    config_filepath,
    rollup_creator,
    data_availability,
    output_dir,
    signer_endpoint,
    client_cert,
    client_key,
    ca_cert,
    api_key,
    private_key,
    artifact_source,
    artifact_version,
    registry_filepath,
    verbose,
):
    """Deploys a single rollup from a JSON request and writes its output documents."""
    setup_logging(verbose)
    raw = _load_json(Path(config_filepath))
    if data_availability is not None:
        raw["data_availability"] = data_availability.value

    try:
        config = normalize_deploy_config(raw)
        signer = signer_from_options(
            chain_id=config.parent_chain_id,
            endpoint=signer_endpoint or raw.get("signer_endpoint"),
            address=config.owner,
            api_key=api_key,
            client_cert=client_cert,
            client_key=client_key,
            ca_cert=ca_cert,
            private_key=private_key,
        )
        bundle = ArtifactStore().load(artifact_source, version=artifact_version)
        try:
            if rollup_creator is None:
                registry = InfrastructureRegistry(
                    Path(registry_filepath or INFRASTRUCTURE_REGISTRY_FILEPATH)
                )
                infrastructure = InfrastructureDeployer(bundle, signer, registry=registry).ensure(
                    config.parent_chain_id, config.parent_chain_rpc
                )
                rollup_creator = infrastructure.rollup_creator_address
            result = RollupDeployer(bundle, signer).deploy(config, rollup_creator)
        finally:
            close = getattr(signer, "close", None)
            if close is not None:
                close()

        if not result.success:
            raise DeploymentError(result.error)
        outputs = generate_outputs(config, result)
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for artifact_type, content in outputs.items():
        filepath = output_dir / f"{config.chain_id}-{artifact_type}.json"
        with open(filepath, "w") as file:
            json.dump(content, file, **OUTPUT_JSON_FORMAT)
        click.echo(f"Wrote {artifact_type} to {filepath}")

    click.echo(f"\nRollup {result.contracts.rollup} deployed in tx {result.transaction_hash}")


if __name__ == "__main__":
    cli()
