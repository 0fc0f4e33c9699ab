import click
import pytest

from deployment import confirm
from deployment.constants import NITRO_INFRASTRUCTURE_PLAN, ZERO_ADDRESS
from deployment.params import ConstructorParameters
from tests.conftest import DEPLOYER_ADDRESS, PARENT_CHAIN_ID


@pytest.fixture
def prompts(monkeypatch):
    asked = []

    def fake_confirm(text, default=False, abort=False):
        asked.append(text)
        return True

    monkeypatch.setattr(click, "confirm", fake_confirm)
    return asked


@pytest.mark.parametrize(
    "value, expected",
    [
        (ZERO_ADDRESS, True),
        (DEPLOYER_ADDRESS, False),
        ([DEPLOYER_ADDRESS, ZERO_ADDRESS], True),
        ({"bridge": DEPLOYER_ADDRESS, "inbox": ZERO_ADDRESS}, True),
        ((DEPLOYER_ADDRESS, 1, True), False),
        (117964, False),
    ],
)
def test_contains_zero_address(value, expected):
    assert confirm._contains_zero_address(value) is expected


def test_zero_address_needs_extra_confirmation(prompts):
    confirm.confirm_resolution({"reader4844_": ZERO_ADDRESS}, "SequencerInbox")
    assert prompts == [
        "Deploy SequencerInbox?",
        "Zero Address detected for deployment parameter; Continue?",
    ]


def test_contract_without_parameters(prompts, capsys):
    confirm.confirm_resolution({}, "Bridge")
    assert prompts == ["Deploy Bridge?"]
    assert "No constructor parameters for Bridge" in capsys.readouterr().out


def test_confirm_plan_lists_phases(prompts, capsys):
    plan = ConstructorParameters.from_yaml(NITRO_INFRASTRUCTURE_PLAN)

    confirm.confirm_plan(plan, PARENT_CHAIN_ID, DEPLOYER_ADDRESS)

    output = capsys.readouterr().out
    for phase in plan.phases:
        assert f"{phase}:" in output
    assert "ERC20SequencerInbox (SequencerInbox)" in output
    assert "Reader4844 [only if blob_reader]" in output
    assert prompts == ["Continue?"]
