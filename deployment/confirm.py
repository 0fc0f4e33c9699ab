from typing import Any, Dict, Iterable

import click

from deployment.constants import ZERO_ADDRESS
from deployment.params import ConstructorParameters, PlannedContract


def _confirm_deployment(contract_name: str) -> None:
    """Asks the user to confirm the deployment of a single contract."""
    click.confirm(f"Deploy {contract_name}?", default=True, abort=True)


def _continue() -> None:
    """Asks the user to continue."""
    click.confirm("Continue?", default=True, abort=True)


def _confirm_zero_address() -> None:
    click.confirm(
        "Zero Address detected for deployment parameter; Continue?", default=False, abort=True
    )


def _contains_zero_address(value: Any) -> bool:
    if isinstance(value, dict):
        return any(_contains_zero_address(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_zero_address(v) for v in value)
    return value == ZERO_ADDRESS


def confirm_resolution(resolved_params: Dict[str, Any], contract_name: str) -> None:
    """Asks the user to confirm the resolved constructor parameters for a single contract."""
    if len(resolved_params) == 0:
        click.echo(f"\n(i) No constructor parameters for {contract_name}")
        _confirm_deployment(contract_name)
        return

    click.echo(f"\nConstructor parameters for {contract_name}")
    contains_zero_address = False
    for name, resolved_value in resolved_params.items():
        click.echo(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = _contains_zero_address(resolved_value)
    _confirm_deployment(contract_name)
    if contains_zero_address:
        _confirm_zero_address()


def _describe(contract: PlannedContract) -> str:
    line = f"\t{contract.name}"
    if contract.contract_type != contract.name:
        line += f" ({contract.contract_type})"
    if contract.condition:
        line += f" [only if {contract.condition}]"
    return line


def confirm_plan(plan: ConstructorParameters, parent_chain_id: int, deployer: str) -> None:
    """Prints the infrastructure plan by phase and asks the user to go ahead."""
    click.echo(f"\nInfrastructure plan for parent chain {parent_chain_id}")
    click.echo(f"Deployer: {deployer}")
    if deployer == ZERO_ADDRESS:
        _confirm_zero_address()
    for phase in plan.phases:
        click.echo(f"\n{phase}:")
        contracts: Iterable[PlannedContract] = (c for c in plan.contracts if c.phase == phase)
        for contract in contracts:
            click.echo(_describe(contract))
    click.echo()
    _continue()
