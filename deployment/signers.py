import itertools
import logging
import os
import shutil
import ssl
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, NamedTuple, Optional

import requests
import rlp
from eth_account import Account
from eth_typing import ChecksumAddress
from eth_utils import big_endian_to_int, keccak, to_checksum_address, to_hex
from hexbytes import HexBytes

from deployment.constants import (
    SIGNER_HTTP_TIMEOUT,
    SIGNER_INITIAL_BACKOFF,
    SIGNER_MAX_BACKOFF,
    SIGNER_MAX_RETRIES,
    SIGNER_RETRYABLE_RPC_CODES,
)
from deployment.exceptions import (
    ConfigurationError,
    DeploymentCancelled,
    MalformedSignerResponse,
    RetryableSignerError,
    SigningError,
)
from deployment.utils import check_cancelled

LOGGER = logging.getLogger(__name__)

LEGACY_TRANSACTION_FIELDS = ("nonce", "gasPrice", "gas", "to", "value", "data", "v", "r", "s")

TYPED_TRANSACTION_FIELDS = {
    # EIP-2930
    1: (
        "chainId", "nonce", "gasPrice", "gas", "to", "value", "data", "accessList", "v", "r", "s",
    ),
    # EIP-1559
    2: (
        "chainId",
        "nonce",
        "maxPriorityFeePerGas",
        "maxFeePerGas",
        "gas",
        "to",
        "value",
        "data",
        "accessList",
        "v",
        "r",
        "s",
    ),
}


class SignedTransaction(NamedTuple):
    """A signed transaction ready for submission plus its decoded fields."""

    raw_transaction: HexBytes
    hash: HexBytes
    transaction: Dict[str, Any]


def decode_signed_transaction(raw_transaction: Any) -> SignedTransaction:
    """Decodes a signed legacy, EIP-2930 or EIP-1559 transaction envelope."""
    raw = HexBytes(raw_transaction)
    if not raw:
        raise ValueError("empty transaction payload")

    if raw[0] >= 0xC0:
        tx_type, payload, names = 0, bytes(raw), LEGACY_TRANSACTION_FIELDS
    elif raw[0] in TYPED_TRANSACTION_FIELDS:
        tx_type, payload, names = raw[0], bytes(raw[1:]), TYPED_TRANSACTION_FIELDS[raw[0]]
    else:
        raise ValueError(f"unsupported transaction type 0x{raw[0]:02x}")

    try:
        fields = rlp.decode(payload)
    except rlp.exceptions.DecodingError as e:
        raise ValueError(f"invalid RLP transaction: {e}") from e
    if not isinstance(fields, list) or len(fields) != len(names):
        raise ValueError(f"expected {len(names)} transaction fields")

    transaction = {"type": tx_type}
    for name, value in zip(names, fields):
        if name == "to":
            transaction["to"] = to_checksum_address(value) if value else None
        elif name == "data":
            transaction["data"] = HexBytes(value)
        elif name == "accessList":
            transaction["accessList"] = [
                (to_checksum_address(address), [HexBytes(key) for key in keys])
                for address, keys in value
            ]
        else:
            transaction[name] = big_endian_to_int(value)

    if tx_type == 0 and transaction["v"] >= 35:
        # EIP-155 replay protection encodes the chain id into v
        transaction["chainId"] = (transaction["v"] - 35) // 2

    return SignedTransaction(
        raw_transaction=raw, hash=HexBytes(keccak(raw)), transaction=transaction
    )


def build_transaction_args(
    transaction: Dict[str, Any], sender: ChecksumAddress, chain_id: int
) -> Dict[str, str]:
    """Serializes an unsigned transaction into eth_signTransaction arguments."""
    args = {
        "from": sender,
        "gas": hex(transaction["gas"]),
        "value": hex(transaction.get("value", 0)),
        "nonce": hex(transaction["nonce"]),
        "chainId": hex(chain_id),
    }
    if transaction.get("to"):
        args["to"] = to_checksum_address(transaction["to"])

    data = HexBytes(transaction.get("data") or b"")
    if data:
        args["data"] = to_hex(data)

    if "maxFeePerGas" in transaction:
        args["maxFeePerGas"] = hex(transaction["maxFeePerGas"])
        args["maxPriorityFeePerGas"] = hex(transaction.get("maxPriorityFeePerGas", 0))
    else:
        args["gasPrice"] = hex(transaction["gasPrice"])
    return args


class TransactionSigner(ABC):
    """Signs transactions on behalf of a single account on a single chain."""

    @property
    @abstractmethod
    def address(self) -> ChecksumAddress:
        raise NotImplementedError

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def sign_transaction(
        self, transaction: Dict[str, Any], cancel_event: Optional[threading.Event] = None
    ) -> SignedTransaction:
        raise NotImplementedError


class RemoteSigner(TransactionSigner):
    """
    Delegates signing to an external JSON-RPC signing service.

    Authenticates with either mutual TLS (PEM client certificate and key, optional CA bundle)
    or a bearer API key. Server errors, transport failures and JSON-RPC server-error codes
    are retried with exponential backoff; everything else fails on the first attempt.
    """

    def __init__(
        self,
        endpoint: str,
        address: str,
        chain_id: int,
        api_key: Optional[str] = None,
        client_cert: Optional[str] = None,
        client_key: Optional[str] = None,
        ca_cert: Optional[str] = None,
        max_retries: int = SIGNER_MAX_RETRIES,
        initial_backoff: float = SIGNER_INITIAL_BACKOFF,
        max_backoff: float = SIGNER_MAX_BACKOFF,
        timeout: float = SIGNER_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not endpoint:
            raise ConfigurationError("signer endpoint is required")
        if max_retries < 1:
            raise ConfigurationError("signer max_retries must be at least 1")

        use_mtls = bool(client_cert or client_key)
        if use_mtls and api_key:
            raise ConfigurationError(
                "signer credentials are ambiguous: provide mTLS certificates or an API key, "
                "not both"
            )
        if not use_mtls and not api_key:
            raise ConfigurationError(
                "signer credentials are missing: provide mTLS certificates or an API key"
            )

        self._endpoint = endpoint
        self._address = to_checksum_address(address)
        self._chain_id = int(chain_id)
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._timeout = timeout
        self._request_ids = itertools.count(1)
        self._cert_dir = None

        self._session = session or requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if use_mtls:
            self._configure_mtls(client_cert, client_key, ca_cert)
        else:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    @property
    def address(self) -> ChecksumAddress:
        return self._address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def uses_mtls(self) -> bool:
        return self._cert_dir is not None

    def _configure_mtls(
        self, client_cert: Optional[str], client_key: Optional[str], ca_cert: Optional[str]
    ) -> None:
        if not (client_cert and client_key):
            raise ConfigurationError("mTLS requires both a client certificate and a client key")

        # requests only accepts certificate file paths
        self._cert_dir = tempfile.mkdtemp(prefix="signer-certs-")
        cert_path = self._write_pem("client.crt", client_cert)
        key_path = self._write_pem("client.key", client_key)
        try:
            ssl.create_default_context().load_cert_chain(cert_path, key_path)
        except (ssl.SSLError, ValueError) as e:
            self.close()
            raise ConfigurationError(f"build TLS config: invalid client key pair: {e}") from e

        self._session.cert = (cert_path, key_path)
        if ca_cert:
            self._session.verify = self._write_pem("ca.crt", ca_cert)

    def _write_pem(self, filename: str, content: str) -> str:
        path = os.path.join(self._cert_dir, filename)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as file:
            file.write(content)
        return path

    def close(self) -> None:
        self._session.close()
        if self._cert_dir is not None:
            shutil.rmtree(self._cert_dir, ignore_errors=True)
            self._cert_dir = None

    def __enter__(self) -> "RemoteSigner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def sign_transaction(
        self, transaction: Dict[str, Any], cancel_event: Optional[threading.Event] = None
    ) -> SignedTransaction:
        args = build_transaction_args(transaction, sender=self.address, chain_id=self.chain_id)

        backoff = self._initial_backoff
        last_error = None
        for attempt in range(1, self._max_retries + 1):
            check_cancelled(cancel_event)
            if attempt > 1:
                LOGGER.warning(
                    "Retrying signer request (attempt %d/%d) in %.1fs: %s",
                    attempt,
                    self._max_retries,
                    backoff,
                    last_error,
                )
                self._wait(backoff, cancel_event)
                backoff = min(backoff * 2, self._max_backoff)

            try:
                signed_hex = self._call("eth_signTransaction", [args])
            except RetryableSignerError as e:
                last_error = e
                continue

            return self._decode(signed_hex)

        raise SigningError(
            f"signing failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    @staticmethod
    def _wait(seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            time.sleep(seconds)
        elif cancel_event.wait(seconds):
            raise DeploymentCancelled("deployment cancelled while waiting to retry signer")

    def _call(self, method: str, params: list) -> str:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._request_ids),
        }
        try:
            response = self._session.post(self._endpoint, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            raise RetryableSignerError(f"http request failed: {e}") from e

        if response.status_code >= 500:
            raise RetryableSignerError(
                f"server error: {response.status_code} {response.text[:256]}"
            )
        if response.status_code >= 400:
            raise SigningError(f"client error: {response.status_code} {response.text[:256]}")

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedSignerResponse(f"unmarshal signer response: {e}") from e
        if not isinstance(body, dict):
            raise MalformedSignerResponse("signer response is not a JSON-RPC object")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            if code in SIGNER_RETRYABLE_RPC_CODES:
                raise RetryableSignerError(f"JSON-RPC error {code}: {message}")
            raise SigningError(f"JSON-RPC error {code}: {message}")

        result = body.get("result")
        if not isinstance(result, str) or not result:
            raise MalformedSignerResponse("signer response carries no signed transaction")
        return result

    @staticmethod
    def _decode(signed_hex: str) -> SignedTransaction:
        try:
            return decode_signed_transaction(signed_hex)
        except ValueError as e:
            raise MalformedSignerResponse(f"decode signed transaction: {e}") from e


class LocalSigner(TransactionSigner):
    """Signs with an in-process private key; intended for tests and offline use."""

    def __init__(self, private_key: str, chain_id: int):
        self._account = Account.from_key(private_key)
        self._chain_id = int(chain_id)

    @property
    def address(self) -> ChecksumAddress:
        return self._account.address

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def sign_transaction(
        self, transaction: Dict[str, Any], cancel_event: Optional[threading.Event] = None
    ) -> SignedTransaction:
        check_cancelled(cancel_event)
        unsigned = {key: value for key, value in transaction.items() if key != "from"}
        if not unsigned.get("to"):
            unsigned.pop("to", None)
        unsigned.setdefault("value", 0)
        unsigned["data"] = bytes(HexBytes(unsigned.get("data") or b""))
        unsigned["chainId"] = self.chain_id
        signed = self._account.sign_transaction(unsigned)
        return decode_signed_transaction(signed.raw_transaction)


def _read_pem(filepath: Optional[str]) -> Optional[str]:
    if not filepath:
        return None
    with open(filepath, "r") as file:
        return file.read()


def signer_from_options(
    chain_id: int,
    endpoint: Optional[str] = None,
    address: Optional[str] = None,
    api_key: Optional[str] = None,
    client_cert: Optional[str] = None,
    client_key: Optional[str] = None,
    ca_cert: Optional[str] = None,
    private_key: Optional[str] = None,
) -> TransactionSigner:
    """Builds a signer from command line options; PEM arguments are file paths."""
    if private_key:
        if endpoint:
            raise ConfigurationError("use either a private key or a signer endpoint, not both")
        LOGGER.warning("Signing with a local private key")
        return LocalSigner(private_key, chain_id=chain_id)
    if not address:
        raise ConfigurationError("the deployer address is required with a remote signer")
    return RemoteSigner(
        endpoint=endpoint,
        address=address,
        chain_id=chain_id,
        api_key=api_key,
        client_cert=_read_pem(client_cert),
        client_key=_read_pem(client_key),
        ca_cert=_read_pem(ca_cert),
    )
