#!/usr/bin/python3

import json

import click

from deployment.exceptions import DeploymentNotFound
from deployment.repository import SQLiteRepository


def _show_deployment(repository, deployment, show_artifacts):
    click.echo(f"Deployment {deployment.id}")
    click.echo("=" * (11 + len(deployment.id)))
    click.echo(f"\tChain ID     : {deployment.chain_id}")
    click.echo(f"\tStack        : {deployment.stack.value}")
    click.echo(f"\tStatus       : {deployment.status.value}")
    click.echo(f"\tStage        : {deployment.current_stage or '-'}")
    if deployment.org_id:
        click.echo(f"\tOrganization : {deployment.org_id}")
    click.echo(f"\tCreated      : {deployment.created_at.isoformat()}")
    click.echo(f"\tUpdated      : {deployment.updated_at.isoformat()}")
    if deployment.error_message:
        click.echo(f"\tError        : {deployment.error_message}")

    transactions = repository.get_transactions(deployment.id)
    if transactions:
        click.echo("\nTransactions")
        for tx in transactions:
            click.echo(f"\t[{tx.stage}] {tx.tx_hash} {tx.description or ''}")

    artifacts = repository.get_artifacts(deployment.id)
    if artifacts:
        click.echo("\nArtifacts")
        for artifact in artifacts:
            click.echo(f"\t{artifact.artifact_type}")
            if show_artifacts:
                click.echo(json.dumps(artifact.content, indent=2))
    click.echo()


@click.command()
@click.option(
    "--database",
    help="SQLite database holding deployment records",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
)
@click.option("--deployment-id", "-i", help="Show a single deployment", required=False)
@click.option("--chain-id", "-c", help="Show the deployment of a chain", type=int, required=False)
@click.option(
    "--show-artifacts", help="Print output documents in full", is_flag=True, default=False
)
def cli(database, deployment_id, chain_id, show_artifacts):
    """Prints deployment records, their transactions and output documents."""
    with SQLiteRepository(database) as repository:
        if deployment_id:
            try:
                deployments = [repository.get_deployment(deployment_id)]
            except DeploymentNotFound:
                raise click.ClickException(f"deployment {deployment_id} not found")
        elif chain_id is not None:
            deployment = repository.get_deployment_by_chain_id(chain_id)
            if deployment is None:
                raise click.ClickException(f"no deployment for chain {chain_id}")
            deployments = [deployment]
        else:
            deployments = repository.list_deployments()

        if not deployments:
            click.echo("No deployments")
        for deployment in deployments:
            _show_deployment(repository, deployment, show_artifacts)


if __name__ == "__main__":
    cli()
