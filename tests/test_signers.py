import json

import pytest
import responses
from eth_account import Account
from eth_utils import to_hex

from deployment.exceptions import (
    ConfigurationError,
    MalformedSignerResponse,
    SigningError,
)
from deployment.signers import (
    LocalSigner,
    RemoteSigner,
    build_transaction_args,
    decode_signed_transaction,
)
from tests.conftest import DEPLOYER_ADDRESS, DEPLOYER_KEY, PARENT_CHAIN_ID

SIGNER_URL = "https://signer.test/rpc"
RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


@pytest.fixture
def transaction():
    return {
        "nonce": 7,
        "gasPrice": 2 * 10**9,
        "gas": 21000,
        "to": RECIPIENT,
        "value": 1,
        "data": b"\x01\x02",
    }


@pytest.fixture
def signed_hex(transaction):
    signed = Account.sign_transaction(dict(transaction, chainId=PARENT_CHAIN_ID), DEPLOYER_KEY)
    return to_hex(signed.raw_transaction)


def remote_signer(**kwargs):
    kwargs.setdefault("api_key", "secret")
    return RemoteSigner(
        endpoint=SIGNER_URL,
        address=DEPLOYER_ADDRESS,
        chain_id=PARENT_CHAIN_ID,
        initial_backoff=0,
        max_backoff=0,
        **kwargs,
    )


def rpc_result(result):
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def test_build_transaction_args(transaction):
    args = build_transaction_args(transaction, sender=DEPLOYER_ADDRESS, chain_id=PARENT_CHAIN_ID)
    assert args == {
        "from": DEPLOYER_ADDRESS,
        "to": RECIPIENT,
        "gas": "0x5208",
        "gasPrice": hex(2 * 10**9),
        "value": "0x1",
        "nonce": "0x7",
        "chainId": hex(PARENT_CHAIN_ID),
        "data": "0x0102",
    }


def test_build_transaction_args_for_contract_creation(transaction):
    del transaction["to"]
    transaction["maxFeePerGas"] = 3
    args = build_transaction_args(transaction, sender=DEPLOYER_ADDRESS, chain_id=1)
    assert "to" not in args
    assert "gasPrice" not in args
    assert args["maxFeePerGas"] == "0x3"
    assert args["maxPriorityFeePerGas"] == "0x0"


def test_decode_signed_legacy_transaction(signed_hex, transaction):
    signed = decode_signed_transaction(signed_hex)
    assert signed.transaction["type"] == 0
    assert signed.transaction["nonce"] == transaction["nonce"]
    assert signed.transaction["to"] == RECIPIENT
    assert signed.transaction["chainId"] == PARENT_CHAIN_ID
    assert signed.transaction["data"] == b"\x01\x02"


@pytest.mark.parametrize("payload", ["0x", "0x05aa", "0xc0"])
def test_decode_rejects_malformed_payloads(payload):
    with pytest.raises(ValueError):
        decode_signed_transaction(payload)


@responses.activate
def test_server_errors_are_retried(transaction, signed_hex):
    responses.add(responses.POST, SIGNER_URL, status=500, body="unavailable")
    responses.add(responses.POST, SIGNER_URL, status=500, body="unavailable")
    responses.add(responses.POST, SIGNER_URL, json=rpc_result(signed_hex), status=200)

    signed = remote_signer().sign_transaction(transaction)

    assert len(responses.calls) == 3
    assert to_hex(signed.raw_transaction) == signed_hex
    request = json.loads(responses.calls[0].request.body)
    assert request["method"] == "eth_signTransaction"
    assert request["params"][0]["from"] == DEPLOYER_ADDRESS
    assert responses.calls[0].request.headers["Authorization"] == "Bearer secret"


@responses.activate
def test_client_errors_are_not_retried(transaction):
    responses.add(responses.POST, SIGNER_URL, status=400, body="bad request")

    with pytest.raises(SigningError, match="client error: 400"):
        remote_signer().sign_transaction(transaction)
    assert len(responses.calls) == 1


@responses.activate
def test_retries_are_bounded(transaction):
    for _ in range(3):
        responses.add(responses.POST, SIGNER_URL, status=503)

    with pytest.raises(SigningError, match="after 3 attempts"):
        remote_signer().sign_transaction(transaction)
    assert len(responses.calls) == 3


@responses.activate
def test_retryable_rpc_error_codes(transaction, signed_hex):
    error = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "busy"}}
    responses.add(responses.POST, SIGNER_URL, json=error, status=200)
    responses.add(responses.POST, SIGNER_URL, json=rpc_result(signed_hex), status=200)

    remote_signer().sign_transaction(transaction)
    assert len(responses.calls) == 2


@responses.activate
def test_fatal_rpc_error_codes(transaction):
    error = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "invalid params"}}
    responses.add(responses.POST, SIGNER_URL, json=error, status=200)

    with pytest.raises(SigningError, match="-32602"):
        remote_signer().sign_transaction(transaction)
    assert len(responses.calls) == 1


@responses.activate
def test_malformed_signed_transaction(transaction):
    responses.add(responses.POST, SIGNER_URL, json=rpc_result("0xdeadbeef"), status=200)

    with pytest.raises(MalformedSignerResponse):
        remote_signer().sign_transaction(transaction)
    assert len(responses.calls) == 1


@responses.activate
def test_missing_result(transaction):
    responses.add(responses.POST, SIGNER_URL, json={"jsonrpc": "2.0", "id": 1}, status=200)

    with pytest.raises(MalformedSignerResponse, match="no signed transaction"):
        remote_signer().sign_transaction(transaction)


def test_credentials_are_exclusive():
    with pytest.raises(ConfigurationError, match="ambiguous"):
        remote_signer(client_cert="cert", client_key="key")
    with pytest.raises(ConfigurationError, match="missing"):
        remote_signer(api_key=None)


def test_endpoint_is_required():
    with pytest.raises(ConfigurationError, match="endpoint"):
        RemoteSigner(endpoint="", address=DEPLOYER_ADDRESS, chain_id=1, api_key="secret")


def test_invalid_client_key_pair():
    with pytest.raises(ConfigurationError, match="invalid client key pair"):
        remote_signer(api_key=None, client_cert="not a cert", client_key="not a key")


def test_local_signer(transaction):
    signer = LocalSigner(DEPLOYER_KEY, chain_id=PARENT_CHAIN_ID)
    assert signer.address == DEPLOYER_ADDRESS

    signed = signer.sign_transaction(dict(transaction, **{"from": DEPLOYER_ADDRESS}))
    assert signed.transaction["chainId"] == PARENT_CHAIN_ID
    assert Account.recover_transaction(signed.raw_transaction) == DEPLOYER_ADDRESS
