#!/usr/bin/python3

from pathlib import Path

import click

from deployment.artifacts import ArtifactStore
from deployment.confirm import confirm_plan, confirm_resolution
from deployment.constants import INFRASTRUCTURE_REGISTRY_FILEPATH, NITRO_INFRASTRUCTURE_PLAN
from deployment.exceptions import DeploymentError
from deployment.infrastructure import InfrastructureDeployer
from deployment.options import (
    api_key_option,
    artifact_source_option,
    artifact_version_option,
    ca_cert_option,
    client_cert_option,
    client_key_option,
    deployer_option,
    parent_chain_id_option,
    parent_rpc_option,
    private_key_option,
    registry_filepath_option,
    signer_endpoint_option,
    verbose_option,
)
from deployment.params import ConstructorParameters
from deployment.registry import InfrastructureRegistry
from deployment.signers import signer_from_options
from deployment.utils import setup_logging


@click.command()
@parent_chain_id_option
@parent_rpc_option
@deployer_option
@signer_endpoint_option
@client_cert_option
@client_key_option
@ca_cert_option
@api_key_option
@private_key_option
@artifact_source_option
@artifact_version_option
@registry_filepath_option
@click.option("--yes", "-y", help="Skip the confirmation prompt", is_flag=True, default=False)
@click.option(
    "--confirm-each",
    help="Review the resolved constructor arguments of every contract before it is deployed",
    is_flag=True,
    default=False,
)
@verbose_option
def cli(
    parent_chain_id,
    parent_rpc,
    deployer,
    signer_endpoint,
    client_cert,
    client_key,
    ca_cert,
    api_key,
    private_key,
    artifact_source,
    artifact_version,
    registry_filepath,
    yes,
    confirm_each,
    verbose,
):
    """
    Ensures the shared Nitro infrastructure (RollupCreator and its dependencies)
    exists on a parent chain, deploying it if no compatible instance is known.

    python scripts/deploy_infrastructure.py --parent-chain-id 11155111 \
        --parent-rpc $L1_RPC_URL --deployer 0x... --signer-endpoint https://signer:8546 \
        --client-cert client.crt --client-key client.key
    """
    setup_logging(verbose)
    registry = InfrastructureRegistry(Path(registry_filepath or INFRASTRUCTURE_REGISTRY_FILEPATH))
    plan = ConstructorParameters.from_yaml(NITRO_INFRASTRUCTURE_PLAN)

    try:
        signer = signer_from_options(
            chain_id=parent_chain_id,
            endpoint=signer_endpoint,
            address=deployer,
            api_key=api_key,
            client_cert=client_cert,
            client_key=client_key,
            ca_cert=ca_cert,
            private_key=private_key,
        )
        bundle = ArtifactStore().load(artifact_source, version=artifact_version)
        if not yes:
            confirm_plan(plan, parent_chain_id, signer.address)

        try:
            result = InfrastructureDeployer(
                bundle,
                signer,
                registry=registry,
                plan=plan,
                confirm=confirm_resolution if confirm_each else None,
            ).ensure(parent_chain_id, parent_rpc)
        finally:
            close = getattr(signer, "close", None)
            if close is not None:
                close()
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"\nRollupCreator: {result.rollup_creator_address} ({result.version})")
    click.echo(f"Source: {result.source.value}")
    for name, address in sorted(result.addresses.items()):
        click.echo(f"\t{name}: {address}")
    if not result.already_deployed:
        click.echo(f"\nRegistry updated at {registry.filepath}")


if __name__ == "__main__":
    cli()
