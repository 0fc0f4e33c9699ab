import logging
import threading
import time
from typing import Any, Dict, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from deployment.constants import RECEIPT_POLL_INTERVAL, RECEIPT_TIMEOUT
from deployment.exceptions import (
    ChainMismatchError,
    DeploymentCancelled,
    ParentChainError,
    ReceiptTimeout,
)
from deployment.utils import check_cancelled

LOGGER = logging.getLogger(__name__)

RPC_REQUEST_TIMEOUT = 60


def _normalize_receipt(receipt: Any) -> Dict[str, Any]:
    """Copies a web3 receipt into a plain dict with the fields deployers rely on."""
    logs = []
    for log in receipt.get("logs", []):
        logs.append(
            {
                "address": log.get("address"),
                "topics": [HexBytes(topic) for topic in log.get("topics", [])],
                "data": HexBytes(log.get("data", b"")),
            }
        )
    contract_address = receipt.get("contractAddress")
    return {
        "transactionHash": HexBytes(receipt["transactionHash"]),
        "blockNumber": receipt.get("blockNumber"),
        "status": receipt.get("status"),
        "contractAddress": to_checksum_address(contract_address) if contract_address else None,
        "gasUsed": receipt.get("gasUsed"),
        "logs": logs,
    }


class ParentChainClient:
    """
    Parent chain RPC access used by the deployers.

    Every failed RPC call is re-raised as a ParentChainError naming the operation.
    """

    def __init__(
        self,
        w3: Web3,
        poll_interval: float = RECEIPT_POLL_INTERVAL,
        receipt_timeout: float = RECEIPT_TIMEOUT,
    ):
        self.w3 = w3
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout

    @classmethod
    def from_rpc(cls, rpc_url: str, **kwargs) -> "ParentChainClient":
        provider = Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": RPC_REQUEST_TIMEOUT})
        return cls(Web3(provider), **kwargs)

    def _rpc(self, operation: str, func, *args):
        try:
            return func(*args)
        except (Web3Exception, ValueError, OSError) as e:
            raise ParentChainError(f"{operation}: {e}") from e

    def chain_id(self) -> int:
        return self._rpc("get chain ID", lambda: self.w3.eth.chain_id)

    def verify_chain_id(self, expected: int) -> None:
        actual = self.chain_id()
        if actual != expected:
            raise ChainMismatchError(expected=expected, actual=actual)

    def get_balance(self, address: str) -> int:
        return self._rpc("get balance", self.w3.eth.get_balance, to_checksum_address(address))

    def get_nonce(self, address: str) -> int:
        return self._rpc(
            "get nonce", self.w3.eth.get_transaction_count, to_checksum_address(address), "pending"
        )

    def gas_price(self) -> int:
        return self._rpc("get gas price", lambda: self.w3.eth.gas_price)

    def estimate_gas(self, transaction: Dict[str, Any]) -> int:
        return self._rpc("estimate gas", self.w3.eth.estimate_gas, self._call_params(transaction))

    def call(self, transaction: Dict[str, Any]) -> HexBytes:
        return HexBytes(self._rpc("call", self.w3.eth.call, self._call_params(transaction)))

    def get_code(self, address: str) -> HexBytes:
        return HexBytes(self._rpc("get code", self.w3.eth.get_code, to_checksum_address(address)))

    def send_raw_transaction(self, raw_transaction: bytes) -> HexBytes:
        return HexBytes(
            self._rpc("send transaction", self.w3.eth.send_raw_transaction, raw_transaction)
        )

    def get_receipt(self, tx_hash: bytes) -> Optional[Dict[str, Any]]:
        """Returns the receipt of a mined transaction, or None while it is pending."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(HexBytes(tx_hash))
        except TransactionNotFound:
            return None
        except (Web3Exception, ValueError, OSError) as e:
            raise ParentChainError(f"get receipt: {e}") from e
        return _normalize_receipt(receipt)

    def wait_for_receipt(
        self,
        tx_hash: bytes,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Polls for a receipt at a fixed interval until it appears or the timeout elapses."""
        timeout = self.receipt_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            check_cancelled(cancel_event)
            receipt = self.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise ReceiptTimeout(to_hex(tx_hash), timeout)
            if cancel_event is None:
                time.sleep(self.poll_interval)
            elif cancel_event.wait(self.poll_interval):
                raise DeploymentCancelled("deployment cancelled while waiting for receipt")

    @staticmethod
    def _call_params(transaction: Dict[str, Any]) -> Dict[str, Any]:
        params = {}
        for key in ("from", "to", "value", "gas", "gasPrice"):
            if transaction.get(key) is not None:
                params[key] = transaction[key]
        data = transaction.get("data")
        if data:
            params["data"] = to_hex(HexBytes(data))
        return params
