import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple

from deployment.artifacts import ArtifactStore
from deployment.chain import ParentChainClient
from deployment.config import (
    DeployConfig,
    OrchestratorSettings,
    SignerCredentials,
    embedded_credentials,
    normalize_deploy_config,
)
from deployment.constants import STALE_DEPLOYMENT_MESSAGE
from deployment.exceptions import (
    ConfigurationError,
    DeploymentCancelled,
    DeploymentError,
    RepositoryError,
)
from deployment.infrastructure import InfrastructureDeployer
from deployment.outputs import generate_outputs
from deployment.registry import InfrastructureRegistry
from deployment.repository import Deployment, DeploymentStatus, Repository, Stack, parse_stack
from deployment.rollup import CREATE_ROLLUP, RollupDeployer, RollupDeployResult
from deployment.signers import RemoteSigner, TransactionSigner
from deployment.transactor import SubmittedTransaction
from deployment.utils import check_cancelled

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, str], None]
SignerFactory = Callable[[SignerCredentials, DeployConfig], TransactionSigner]

STAGE_INFRASTRUCTURE = "infrastructure"
STAGE_DEPLOYING = "deploying"
STAGE_POST_DEPLOY = "post_deploy"


#
# Certificates
#


class MTLSCredentials(NamedTuple):
    client_cert: str
    client_key: str
    ca_cert: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.client_cert and self.client_key)


class CertificateProvider(ABC):
    """Issues signer client certificates for an organization."""

    @abstractmethod
    def get_certificates(self, org_id: str) -> MTLSCredentials:
        raise NotImplementedError


class StaticCertificateProvider(CertificateProvider):
    """Serves fixed certificates, per organization or one pair for all."""

    def __init__(
        self,
        certificates: Optional[Dict[str, MTLSCredentials]] = None,
        default: Optional[MTLSCredentials] = None,
    ):
        self.certificates = dict(certificates or {})
        self.default = default

    @classmethod
    def from_files(
        cls, client_cert: Path, client_key: Path, ca_cert: Optional[Path] = None
    ) -> "StaticCertificateProvider":
        try:
            default = MTLSCredentials(
                client_cert=Path(client_cert).read_text(),
                client_key=Path(client_key).read_text(),
                ca_cert=Path(ca_cert).read_text() if ca_cert else None,
            )
        except OSError as e:
            raise ConfigurationError(f"read client certificates: {e}") from e
        return cls(default=default)

    def get_certificates(self, org_id: str) -> MTLSCredentials:
        return self.certificates.get(org_id, self.default) or MTLSCredentials("", "")


def remote_signer_factory(
    credentials: SignerCredentials, config: DeployConfig
) -> TransactionSigner:
    if not credentials.endpoint:
        raise ConfigurationError("signer endpoint is not configured")
    return RemoteSigner(
        endpoint=credentials.endpoint,
        address=config.owner,
        chain_id=config.parent_chain_id,
        api_key=None if credentials.has_mtls else credentials.api_key,
        client_cert=credentials.client_cert if credentials.has_mtls else None,
        client_key=credentials.client_key if credentials.has_mtls else None,
        ca_cert=credentials.ca_cert if credentials.has_mtls else None,
    )


#
# Jobs
#


class JobRegistry:
    """Lock-guarded map of active deployment ids to their worker and cancel handle."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Tuple[threading.Thread, threading.Event]] = dict()

    def register(
        self, deployment_id: str, thread: threading.Thread, cancel_event: threading.Event
    ) -> bool:
        with self._lock:
            current = self._jobs.get(deployment_id)
            if current is not None and current[0].is_alive():
                return False
            self._jobs[deployment_id] = (thread, cancel_event)
            return True

    def remove(self, deployment_id: str, thread: Optional[threading.Thread] = None) -> None:
        with self._lock:
            current = self._jobs.get(deployment_id)
            if current is not None and (thread is None or current[0] is thread):
                del self._jobs[deployment_id]

    def cancel(self, deployment_id: str) -> bool:
        with self._lock:
            current = self._jobs.get(deployment_id)
        if current is None:
            return False
        current[1].set()
        return True

    def thread(self, deployment_id: str) -> Optional[threading.Thread]:
        with self._lock:
            current = self._jobs.get(deployment_id)
        return current[0] if current else None

    def is_active(self, deployment_id: str) -> bool:
        thread = self.thread(deployment_id)
        return thread is not None and thread.is_alive()

    def active(self) -> List[str]:
        with self._lock:
            return [id_ for id_, (thread, _) in self._jobs.items() if thread.is_alive()]


#
# Orchestrator
#


class Orchestrator:
    """
    Drives stored deployments from pending to a terminal status.

    Each deployment runs on its own worker thread; the repository is the only
    place status is kept. Every failure goes through _fail_deployment.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Optional[OrchestratorSettings] = None,
        certificate_provider: Optional[CertificateProvider] = None,
        artifact_store: Optional[ArtifactStore] = None,
        infrastructure_registry: Optional[InfrastructureRegistry] = None,
        client_factory: Callable[[str], ParentChainClient] = ParentChainClient.from_rpc,
        signer_factory: SignerFactory = remote_signer_factory,
    ):
        self.repository = repository
        self.settings = settings or OrchestratorSettings()
        self.certificate_provider = certificate_provider
        self.artifact_store = artifact_store or ArtifactStore(
            cache_dir=self.settings.artifact_cache_dir,
            verify_checksums=self.settings.verify_checksums,
        )
        self.infrastructure_registry = infrastructure_registry or InfrastructureRegistry(
            self.settings.infrastructure_registry
        )
        self.client_factory = client_factory
        self.signer_factory = signer_factory
        self.jobs = JobRegistry()

    #
    # Synchronous execution
    #

    def deploy(
        self,
        deployment_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Deployment:
        """Runs a deployment to completion on the calling thread."""
        deployment = self.repository.get_deployment(deployment_id)
        LOGGER.info("Starting deployment %s (chain %d)", deployment_id, deployment.chain_id)

        def report(stage: str, progress: float, message: str, cancellable: bool = True) -> None:
            if cancellable:
                check_cancelled(cancel_event)
            self.repository.update_deployment_status(
                deployment_id, DeploymentStatus.RUNNING, stage=stage
            )
            LOGGER.info("[%s] %s (%s, %.0f%%)", deployment_id, message, stage, progress * 100)
            if on_progress is not None:
                on_progress(stage, progress, message)

        if cancel_event is not None and cancel_event.is_set():
            LOGGER.info("Deployment %s cancelled before it started", deployment_id)
            return deployment

        # a completed deployment is refused here without being marked failed
        report("init", 0.0, "Loading deployment configuration")

        try:
            result = self._execute(deployment, report, cancel_event)
            completed = self._complete(deployment_id)
        except DeploymentCancelled:
            LOGGER.info("Deployment %s cancelled; leaving it paused", deployment_id)
            self._pause(deployment_id)
            return self.repository.get_deployment(deployment_id)
        except Exception as e:
            self._fail_deployment(deployment_id, e)
            raise

        LOGGER.info(
            "Deployment %s completed: rollup %s (tx %s)",
            deployment_id,
            result.contracts.rollup,
            result.transaction_hash,
        )
        if on_progress is not None:
            on_progress("completed", 1.0, "Deployment completed")
        return completed

    def _execute(
        self,
        deployment: Deployment,
        report: Callable[..., None],
        cancel_event: Optional[threading.Event],
    ) -> RollupDeployResult:
        report("config", 0.05, "Validating deployment configuration")
        stack = parse_stack(deployment.stack)
        if stack is not Stack.NITRO:
            raise ConfigurationError(f"invalid stack type: {stack.value}")
        raw = self._parse_config(deployment.config)

        report("credentials", 0.10, "Resolving signer credentials")
        credentials = self.resolve_credentials(deployment, raw)
        config = normalize_deploy_config(raw, credentials=credentials)

        report("artifacts", 0.15, "Loading contract artifacts")
        bundle = self.artifact_store.load(
            self.settings.artifact_source, version=self.settings.artifact_version
        )

        report("signer", 0.20, "Connecting transaction signer")
        signer = self.signer_factory(credentials, config)
        try:
            report(STAGE_INFRASTRUCTURE, 0.25, "Ensuring infrastructure contracts")
            infrastructure = InfrastructureDeployer(
                bundle,
                signer,
                registry=self.infrastructure_registry,
                client_factory=self.client_factory,
            ).ensure(
                config.parent_chain_id,
                config.parent_chain_rpc,
                cancel_event=cancel_event,
                on_transaction=self._transaction_recorder(deployment.id, STAGE_INFRASTRUCTURE),
            )
            report(
                STAGE_INFRASTRUCTURE,
                0.33,
                f"Infrastructure ready: RollupCreator {infrastructure.rollup_creator_address} "
                f"({infrastructure.source.value})",
            )

            report(STAGE_DEPLOYING, 0.40, "Creating rollup")
            result = RollupDeployer(bundle, signer, client_factory=self.client_factory).deploy(
                config,
                infrastructure.rollup_creator_address,
                cancel_event=cancel_event,
                on_transaction=self._rollup_recorder(deployment.id),
            )
        finally:
            close = getattr(signer, "close", None)
            if close is not None:
                close()

        if not result.success:
            raise DeploymentError(result.error or "rollup deployment failed")

        # the rollup exists on chain; a stop request can no longer interrupt
        report("persisting", 0.90, "Persisting deployment artifacts", cancellable=False)
        self._persist_outputs(deployment.id, config, result)
        return result

    @staticmethod
    def _parse_config(config: Any) -> Dict[str, Any]:
        if isinstance(config, (str, bytes)):
            try:
                config = json.loads(config)
            except ValueError as e:
                raise ConfigurationError(f"parse deployment config: {e}") from e
        if not isinstance(config, Mapping):
            raise ConfigurationError("parse deployment config: expected a JSON object")
        return dict(config)

    def resolve_credentials(
        self, deployment: Deployment, raw: Mapping[str, Any]
    ) -> SignerCredentials:
        """Certificate provider first, then mTLS or an API key embedded in the stored config."""
        endpoint = raw.get("signer_endpoint") or self.settings.signer_endpoint

        if self.certificate_provider is not None:
            org_id = deployment.org_id or raw.get("org_id")
            if not org_id:
                raise ConfigurationError("org_id is required to issue signer certificates")
            LOGGER.info("Issuing signer certificates for org %s", org_id)
            certificates = self.certificate_provider.get_certificates(str(org_id))
            if certificates is None or certificates.is_empty:
                raise ConfigurationError(
                    f"certificate provider returned empty credentials for org {org_id}"
                )
            return SignerCredentials(
                endpoint=endpoint,
                client_cert=certificates.client_cert,
                client_key=certificates.client_key,
                ca_cert=certificates.ca_cert,
            )

        embedded = embedded_credentials(raw)
        if embedded.has_mtls:
            LOGGER.warning("No certificate provider configured; using certificates from config")
            return SignerCredentials(
                endpoint=endpoint,
                client_cert=embedded.client_cert,
                client_key=embedded.client_key,
                ca_cert=embedded.ca_cert,
            )
        if embedded.has_api_key:
            return SignerCredentials(endpoint=endpoint, api_key=embedded.api_key)

        raise ConfigurationError(
            "mTLS certificates not available: no certificate provider configured "
            "and no credentials in deployment config"
        )

    def _transaction_recorder(
        self, deployment_id: str, stage: str
    ) -> Callable[[SubmittedTransaction], None]:
        def record(submitted: SubmittedTransaction) -> None:
            self.repository.record_transaction(
                deployment_id, stage, submitted.tx_hash, description=submitted.description
            )

        return record

    def _rollup_recorder(self, deployment_id: str) -> Callable[[SubmittedTransaction], None]:
        def record(submitted: SubmittedTransaction) -> None:
            stage = STAGE_DEPLOYING if submitted.description == CREATE_ROLLUP else STAGE_POST_DEPLOY
            self.repository.record_transaction(
                deployment_id, stage, submitted.tx_hash, description=submitted.description
            )

        return record

    def _persist_outputs(
        self, deployment_id: str, config: DeployConfig, result: RollupDeployResult
    ) -> None:
        for artifact_type, content in generate_outputs(config, result).items():
            self.repository.save_artifact(deployment_id, artifact_type, content)
            LOGGER.debug("Saved %s artifact for deployment %s", artifact_type, deployment_id)

    def _fail_deployment(self, deployment_id: str, error: BaseException) -> str:
        stage = None
        try:
            stage = self.repository.get_deployment(deployment_id).current_stage
        except RepositoryError as e:
            LOGGER.warning("Failed to load deployment %s: %s", deployment_id, e)

        message = f"{stage}: {error}" if stage else str(error)
        LOGGER.error("Deployment %s failed: %s", deployment_id, message)
        try:
            self.repository.set_deployment_error(deployment_id, message)
        except RepositoryError as e:
            LOGGER.warning("Failed to set error for deployment %s: %s", deployment_id, e)
        try:
            self.repository.update_deployment_status(deployment_id, DeploymentStatus.FAILED)
        except RepositoryError as e:
            LOGGER.warning("Failed to mark deployment %s failed: %s", deployment_id, e)
        return message

    def _complete(self, deployment_id: str) -> Deployment:
        # a pause recorded after createRollup was confirmed is overridden
        self.repository.update_deployment_status(
            deployment_id, DeploymentStatus.RUNNING, stage="completed"
        )
        return self.repository.update_deployment_status(
            deployment_id, DeploymentStatus.COMPLETED, stage="completed"
        )

    def _pause(self, deployment_id: str) -> None:
        deployment = self.repository.get_deployment(deployment_id)
        if deployment.status is DeploymentStatus.RUNNING:
            self.repository.update_deployment_status(deployment_id, DeploymentStatus.PAUSED)

    #
    # Background execution
    #

    def start(
        self, deployment_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> threading.Event:
        """Runs a deployment on a worker thread; returns its cancel handle."""
        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(deployment_id, on_progress, cancel_event),
            name=f"deployment-{deployment_id}",
            daemon=True,
        )
        if not self.jobs.register(deployment_id, thread, cancel_event):
            raise DeploymentError(f"deployment {deployment_id} is already running")
        thread.start()
        return cancel_event

    def _run(
        self,
        deployment_id: str,
        on_progress: Optional[ProgressCallback],
        cancel_event: threading.Event,
    ) -> None:
        try:
            self.deploy(deployment_id, on_progress=on_progress, cancel_event=cancel_event)
        except Exception as e:
            # already persisted by deploy; the worker has nowhere to raise to
            LOGGER.debug("Worker for deployment %s exited with %r", deployment_id, e)
        finally:
            self.jobs.remove(deployment_id, threading.current_thread())

    def stop(self, deployment_id: str) -> bool:
        """
        Cancels a running deployment; on-chain effects stay.

        A live worker pauses the deployment at its next checkpoint, or completes
        it if createRollup was already broadcast. Without a worker the record
        is paused directly.
        """
        cancelled = self.jobs.cancel(deployment_id)
        if not cancelled:
            self._pause(deployment_id)
        LOGGER.info("Stop requested for deployment %s", deployment_id)
        return cancelled

    def wait(self, deployment_id: str, timeout: Optional[float] = None) -> bool:
        """Blocks until the worker exits; returns False if it is still running."""
        thread = self.jobs.thread(deployment_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        for deployment_id in self.jobs.active():
            self.stop(deployment_id)
        for deployment_id in self.jobs.active():
            self.wait(deployment_id, timeout)

    #
    # Recovery
    #

    def process_pending(self) -> List[str]:
        started = list()
        for deployment in self.repository.list_deployments(DeploymentStatus.PENDING):
            if self.jobs.is_active(deployment.id):
                continue
            self.start(deployment.id)
            started.append(deployment.id)
        if started:
            LOGGER.info("Started %d pending deployment(s)", len(started))
        return started

    def sweep_stale(self) -> int:
        # workers alive in this process are not stale, however long a stage takes
        count = self.repository.mark_stale_deployments_failed(
            self.settings.stale_after, STALE_DEPLOYMENT_MESSAGE, exclude=self.jobs.active()
        )
        if count:
            LOGGER.warning("Marked %d stale deployment(s) as failed", count)
        return count

    def recover(self) -> Tuple[int, List[str]]:
        """Startup recovery: fail orphaned running deployments, then resume pending ones."""
        swept = self.sweep_stale()
        return swept, self.process_pending()
