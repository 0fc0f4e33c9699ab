import logging
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from hexbytes import HexBytes

from deployment.chain import ParentChainClient
from deployment.constants import DEFAULT_CALL_GAS_LIMIT, DEFAULT_DEPLOY_GAS_LIMIT
from deployment.exceptions import DeploymentReverted, ParentChainError, SigningError
from deployment.registry import RegistryEntry
from deployment.signers import TransactionSigner
from deployment.utils import boost_gas_price, buffer_gas_limit, check_cancelled

LOGGER = logging.getLogger(__name__)


class SubmittedTransaction(NamedTuple):
    """An on-chain submission made during a deployment."""

    tx_hash: str
    description: str
    to: Optional[ChecksumAddress] = None


TransactionCallback = Callable[[SubmittedTransaction], None]


class Transactor:
    """
    Signs and submits transactions for a single account, strictly one at a time.

    The nonce is fetched fresh before every submission; a mined transaction with a
    failure status raises DeploymentReverted.
    """

    def __init__(
        self,
        client: ParentChainClient,
        signer: TransactionSigner,
        on_transaction: Optional[TransactionCallback] = None,
    ):
        self.client = client
        self.signer = signer
        self.on_transaction = on_transaction
        self.transactions: List[SubmittedTransaction] = list()

    @property
    def address(self) -> ChecksumAddress:
        return self.signer.address

    def gas_price(self) -> int:
        return boost_gas_price(self.client.gas_price())

    def estimate_gas(self, transaction: Dict[str, Any], default: int, description: str) -> int:
        try:
            return self.client.estimate_gas(dict(transaction, **{"from": self.address}))
        except ParentChainError as e:
            LOGGER.warning(
                "Gas estimation failed for %s, using default %d: %s", description, default, e
            )
            return default

    def build(
        self,
        data: bytes,
        description: str,
        to: Optional[str] = None,
        value: int = 0,
        default_gas: int = DEFAULT_CALL_GAS_LIMIT,
        gas_cap: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Builds an unsigned legacy transaction with a fresh nonce and buffered gas limit."""
        transaction = {
            "nonce": self.client.get_nonce(self.address),
            "gasPrice": gas_price if gas_price is not None else self.gas_price(),
            "value": value,
            "data": HexBytes(data),
        }
        if to is not None:
            transaction["to"] = to_checksum_address(to)

        estimate = self.estimate_gas(transaction, default=default_gas, description=description)
        gas = buffer_gas_limit(estimate)
        if gas_cap is not None and gas > gas_cap:
            LOGGER.warning("Gas limit for %s capped from %d to %d", description, gas, gas_cap)
            gas = gas_cap
        transaction["gas"] = gas
        return transaction

    def submit(
        self,
        transaction: Dict[str, Any],
        description: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Signs and broadcasts a transaction; returns its hash."""
        check_cancelled(cancel_event)
        try:
            signed = self.signer.sign_transaction(transaction, cancel_event=cancel_event)
        except SigningError as e:
            raise SigningError(f"sign {description}: {e}") from e

        self.client.send_raw_transaction(signed.raw_transaction)
        tx_hash = to_hex(signed.hash)
        LOGGER.info("Submitted %s (tx %s, nonce %d)", description, tx_hash, transaction["nonce"])

        submitted = SubmittedTransaction(
            tx_hash=tx_hash, description=description, to=transaction.get("to")
        )
        self.transactions.append(submitted)
        if self.on_transaction is not None:
            self.on_transaction(submitted)
        return tx_hash

    def wait(
        self,
        tx_hash: str,
        description: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        receipt = self.client.wait_for_receipt(HexBytes(tx_hash), cancel_event=cancel_event)
        if receipt["status"] != 1:
            raise DeploymentReverted(description, tx_hash, receipt.get("blockNumber"))
        return receipt

    def deploy(
        self,
        name: str,
        data: bytes,
        cancel_event: Optional[threading.Event] = None,
    ) -> RegistryEntry:
        """Deploys a contract from creation bytecode and returns its registry entry."""
        LOGGER.info("Deploying %s...", name)
        transaction = self.build(
            data=data, description=name, default_gas=DEFAULT_DEPLOY_GAS_LIMIT
        )
        tx_hash = self.submit(transaction, description=name, cancel_event=cancel_event)
        receipt = self.wait(tx_hash, description=f"{name} deployment", cancel_event=cancel_event)
        address = receipt["contractAddress"]
        if not address:
            raise DeploymentReverted(f"{name} (no contract address)", tx_hash)
        LOGGER.info("Deployed %s at %s", name, address)
        return RegistryEntry(
            name=name, address=address, tx_hash=tx_hash, block_number=receipt["blockNumber"]
        )

    def transact(
        self,
        to: str,
        data: bytes,
        description: str,
        value: int = 0,
        default_gas: int = DEFAULT_CALL_GAS_LIMIT,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Sends a contract call and waits for a successful receipt."""
        transaction = self.build(
            data=data, description=description, to=to, value=value, default_gas=default_gas
        )
        tx_hash = self.submit(transaction, description=description, cancel_event=cancel_event)
        return self.wait(tx_hash, description=description, cancel_event=cancel_event)
