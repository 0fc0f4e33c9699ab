class DeploymentError(Exception):
    """Base exception for rollup deployment errors."""

    pass


class DeploymentCancelled(Exception):
    """Raised when a running deployment observes its cancellation event."""

    pass


#
# Configuration
#


class ConfigurationError(DeploymentError, ValueError):
    """Raised when a deployment request or settings file is invalid."""

    pass


#
# Artifacts
#


class ArtifactError(DeploymentError):
    """Base exception for contract artifact loading errors."""

    pass


class ArtifactIntegrityError(ArtifactError):
    """Raised when an artifact bundle fails checksum verification."""

    pass


class ArtifactFormatError(ArtifactError, ValueError):
    """Raised when a contract artifact file cannot be decoded."""

    pass


class MissingContractsError(ArtifactError):
    """Raised when an artifact bundle lacks one or more required contracts."""

    def __init__(self, missing):
        self.missing = sorted(missing)
        super().__init__(f"missing required contracts: {', '.join(self.missing)}")


#
# Signing
#


class SigningError(DeploymentError):
    """Raised when a transaction cannot be signed."""

    pass


class RetryableSignerError(SigningError):
    """Raised for signer failures that may succeed on a later attempt."""

    pass


class MalformedSignerResponse(SigningError):
    """Raised when the signer answered successfully with an undecodable transaction."""

    pass


#
# Parent chain
#


class ParentChainError(DeploymentError):
    """Raised when an RPC call against the parent chain fails."""

    pass


class ChainMismatchError(DeploymentError, ValueError):
    """Raised when the connected RPC reports an unexpected chain id."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"chain ID mismatch: expected {expected}, got {actual}")


class InsufficientFundsError(DeploymentError):
    """Raised when the deployer account has no balance on the parent chain."""

    pass


class DeploymentReverted(DeploymentError):
    """Raised when a deployment transaction was mined with a failure status."""

    def __init__(self, description: str, tx_hash: str, block_number: int = None):
        self.tx_hash = tx_hash
        self.block_number = block_number
        super().__init__(f"{description} reverted (tx {tx_hash})")


class ReceiptTimeout(DeploymentError):
    """Raised when a transaction receipt does not appear in time."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"timeout waiting for receipt of {tx_hash} after {timeout:.0f}s")


class EventNotFoundError(DeploymentError, ValueError):
    """Raised when an expected event log is absent from a receipt."""

    pass


#
# Repository
#


class RepositoryError(DeploymentError):
    """Base exception for deployment repository errors."""

    pass


class DeploymentNotFound(RepositoryError, LookupError):
    """Raised when a deployment record does not exist."""

    pass


class DuplicateDeployment(RepositoryError, ValueError):
    """Raised when a deployment already exists for a chain id."""

    pass


class InvalidStatusTransition(RepositoryError, ValueError):
    """Raised when a deployment status change would skip a state."""

    pass
