#!/usr/bin/python3

import time
from pathlib import Path

import click

from deployment.config import OrchestratorSettings
from deployment.exceptions import DeploymentError
from deployment.options import database_option, settings_option, verbose_option
from deployment.orchestrator import Orchestrator, StaticCertificateProvider
from deployment.repository import open_repository
from deployment.utils import _load_json, setup_logging


@click.command()
@database_option
@settings_option
@click.option(
    "--client-cert",
    help="PEM client certificate issued to every organization",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)
@click.option(
    "--client-key",
    help="PEM client key issued to every organization",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)
@click.option(
    "--ca-cert",
    help="PEM CA bundle for the signer",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)
@click.option(
    "--submit",
    help="Queue the JSON deployment request in this file before running",
    type=click.Path(exists=True, dir_okay=False),
    multiple=True,
)
@click.option("--org-id", help="Organization of submitted requests", required=False)
@click.option(
    "--poll-interval",
    help="Seconds between scans for pending deployments",
    type=float,
    default=10.0,
    show_default=True,
)
@click.option(
    "--once", help="Run what is pending, wait for it, then exit", is_flag=True, default=False
)
@verbose_option
def cli(
    database,
    settings_filepath,
    client_cert,
    client_key,
    ca_cert,
    submit,
    org_id,
    poll_interval,
    once,
    verbose,
):
    """
    Runs the deployment worker: fails stale deployments left running by a crashed
    worker, then starts every pending deployment on its own thread.
    """
    setup_logging(verbose)
    try:
        settings = OrchestratorSettings.from_env(filepath=settings_filepath)
    except (DeploymentError, OSError) as e:
        raise click.ClickException(f"load settings: {e}") from e

    certificate_provider = None
    if client_cert or client_key:
        if not (client_cert and client_key):
            raise click.BadParameter("--client-cert and --client-key go together")
        try:
            certificate_provider = StaticCertificateProvider.from_files(
                client_cert, client_key, ca_cert
            )
        except DeploymentError as e:
            raise click.ClickException(str(e)) from e

    repository = open_repository(database or settings.database)
    orchestrator = Orchestrator(
        repository, settings=settings, certificate_provider=certificate_provider
    )

    for filepath in submit:
        request = _load_json(Path(filepath))
        try:
            deployment = repository.create_deployment(
                chain_id=int(request["chain_id"]), config=request, org_id=org_id
            )
        except (KeyError, ValueError, DeploymentError) as e:
            raise click.ClickException(f"submit {filepath}: {e}") from e
        click.echo(f"Queued deployment {deployment.id} for chain {deployment.chain_id}")

    try:
        swept, started = orchestrator.recover()
        click.echo(f"Swept {swept} stale deployment(s); started {len(started)}")
        if once:
            for deployment_id in started:
                orchestrator.wait(deployment_id)
            return
        while True:
            time.sleep(poll_interval)
            orchestrator.sweep_stale()
            orchestrator.process_pending()
    except KeyboardInterrupt:
        click.echo("\nStopping running deployments...")
        orchestrator.shutdown(timeout=30)
    finally:
        repository.close()


if __name__ == "__main__":
    cli()
