import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from deployment.exceptions import (
    ConfigurationError,
    DeploymentNotFound,
    DuplicateDeployment,
    InvalidStatusTransition,
    RepositoryError,
)

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class Stack(str, Enum):
    NITRO = "nitro"
    OPSTACK = "opstack"
    POP_BUNDLE = "pop-bundle"


# status -> statuses it may move to; a running deployment may update its stage in place
ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.RUNNING}),
    DeploymentStatus.RUNNING: frozenset(
        {
            DeploymentStatus.RUNNING,
            DeploymentStatus.COMPLETED,
            DeploymentStatus.FAILED,
            DeploymentStatus.PAUSED,
        }
    ),
    DeploymentStatus.PAUSED: frozenset({DeploymentStatus.RUNNING}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.RUNNING}),
    DeploymentStatus.COMPLETED: frozenset(),
}


def parse_stack(value: Union[str, Stack]) -> Stack:
    try:
        return Stack(value)
    except ValueError:
        raise ConfigurationError(f"invalid stack type: {value}") from None


def check_transition(deployment_id: str, current: DeploymentStatus, new: DeploymentStatus) -> None:
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(
            f"deployment {deployment_id} cannot move from {current.value} to {new.value}"
        )


@dataclass
class Deployment:
    id: str
    chain_id: int
    stack: Stack
    config: Dict[str, Any]
    status: DeploymentStatus = DeploymentStatus.PENDING
    org_id: Optional[str] = None
    current_stage: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Transaction:
    """An on-chain transaction submitted during a deployment."""

    id: str
    deployment_id: str
    stage: str
    tx_hash: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Artifact:
    """A generated output document; one per type per deployment."""

    id: str
    deployment_id: str
    artifact_type: str
    content: Any
    created_at: datetime = field(default_factory=_utcnow)


class Repository(ABC):
    """
    Persistence for deployments, their transactions and their output documents.

    The repository is the source of truth for deployment status; every status
    change is validated against ALLOWED_TRANSITIONS.
    """

    #
    # Deployments
    #

    @abstractmethod
    def create_deployment(
        self,
        chain_id: int,
        config: Dict[str, Any],
        stack: Union[str, Stack] = Stack.NITRO,
        org_id: Optional[str] = None,
    ) -> Deployment:
        raise NotImplementedError

    @abstractmethod
    def get_deployment(self, deployment_id: str) -> Deployment:
        raise NotImplementedError

    @abstractmethod
    def get_deployment_by_chain_id(self, chain_id: int) -> Optional[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def list_deployments(self, status: Optional[DeploymentStatus] = None) -> List[Deployment]:
        raise NotImplementedError

    @abstractmethod
    def update_deployment_status(
        self, deployment_id: str, status: DeploymentStatus, stage: Optional[str] = None
    ) -> Deployment:
        raise NotImplementedError

    @abstractmethod
    def set_deployment_error(self, deployment_id: str, message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_stale_deployments_failed(
        self, older_than: float, message: str, exclude: Iterable[str] = ()
    ) -> int:
        """
        Fails deployments running without an update for `older_than` seconds,
        except those whose ids are in `exclude`.
        """
        raise NotImplementedError

    #
    # Transactions
    #

    @abstractmethod
    def record_transaction(
        self, deployment_id: str, stage: str, tx_hash: str, description: Optional[str] = None
    ) -> Transaction:
        raise NotImplementedError

    @abstractmethod
    def get_transactions(self, deployment_id: str) -> List[Transaction]:
        raise NotImplementedError

    @abstractmethod
    def get_transaction_by_hash(self, tx_hash: str) -> Optional[Transaction]:
        raise NotImplementedError

    #
    # Artifacts
    #

    @abstractmethod
    def save_artifact(self, deployment_id: str, artifact_type: str, content: Any) -> Artifact:
        """Inserts or replaces the artifact of a type for a deployment."""
        raise NotImplementedError

    @abstractmethod
    def get_artifact(self, deployment_id: str, artifact_type: str) -> Optional[Artifact]:
        raise NotImplementedError

    @abstractmethod
    def get_artifacts(self, deployment_id: str) -> List[Artifact]:
        raise NotImplementedError

    def close(self) -> None:
        pass


#
# In-memory
#


class InMemoryRepository(Repository):
    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self._deployments: Dict[str, Deployment] = dict()
        self._transactions: List[Transaction] = list()
        self._artifacts: Dict[tuple, Artifact] = dict()

    def _get(self, deployment_id: str) -> Deployment:
        try:
            return self._deployments[deployment_id]
        except KeyError:
            raise DeploymentNotFound(f"deployment not found: {deployment_id}") from None

    def create_deployment(self, chain_id, config, stack=Stack.NITRO, org_id=None):
        stack = parse_stack(stack)
        with self._lock:
            if any(d.chain_id == chain_id for d in self._deployments.values()):
                raise DuplicateDeployment(f"a deployment for chain {chain_id} already exists")
            now = self._clock()
            deployment = Deployment(
                id=_new_id(),
                chain_id=chain_id,
                stack=stack,
                config=deepcopy(dict(config)),
                org_id=org_id,
                created_at=now,
                updated_at=now,
            )
            self._deployments[deployment.id] = deployment
            return deepcopy(deployment)

    def get_deployment(self, deployment_id):
        with self._lock:
            return deepcopy(self._get(deployment_id))

    def get_deployment_by_chain_id(self, chain_id):
        with self._lock:
            for deployment in self._deployments.values():
                if deployment.chain_id == chain_id:
                    return deepcopy(deployment)
        return None

    def list_deployments(self, status=None):
        with self._lock:
            deployments = [
                deepcopy(d)
                for d in self._deployments.values()
                if status is None or d.status == status
            ]
        return sorted(deployments, key=lambda d: d.created_at)

    def update_deployment_status(self, deployment_id, status, stage=None):
        status = DeploymentStatus(status)
        with self._lock:
            deployment = self._get(deployment_id)
            check_transition(deployment_id, deployment.status, status)
            if status is DeploymentStatus.RUNNING and deployment.status is not status:
                deployment.error_message = None
            deployment.status = status
            if stage is not None:
                deployment.current_stage = stage
            deployment.updated_at = self._clock()
            return deepcopy(deployment)

    def set_deployment_error(self, deployment_id, message):
        with self._lock:
            deployment = self._get(deployment_id)
            deployment.error_message = message
            deployment.updated_at = self._clock()

    def mark_stale_deployments_failed(self, older_than, message, exclude=()):
        exclude = set(exclude)
        with self._lock:
            now = self._clock()
            cutoff = now - timedelta(seconds=older_than)
            count = 0
            for deployment in self._deployments.values():
                if deployment.id in exclude:
                    continue
                if deployment.status is DeploymentStatus.RUNNING and deployment.updated_at < cutoff:
                    deployment.status = DeploymentStatus.FAILED
                    deployment.error_message = message
                    deployment.updated_at = now
                    count += 1
            return count

    def record_transaction(self, deployment_id, stage, tx_hash, description=None):
        with self._lock:
            # a recorded transaction counts as activity for the stale sweep
            self._get(deployment_id).updated_at = self._clock()
            for existing in self._transactions:
                if existing.deployment_id == deployment_id and existing.tx_hash == tx_hash:
                    return deepcopy(existing)
            transaction = Transaction(
                id=_new_id(),
                deployment_id=deployment_id,
                stage=stage,
                tx_hash=tx_hash,
                description=description,
                created_at=self._clock(),
            )
            self._transactions.append(transaction)
            return deepcopy(transaction)

    def get_transactions(self, deployment_id):
        with self._lock:
            return [deepcopy(t) for t in self._transactions if t.deployment_id == deployment_id]

    def get_transaction_by_hash(self, tx_hash):
        with self._lock:
            for transaction in self._transactions:
                if transaction.tx_hash == tx_hash:
                    return deepcopy(transaction)
        return None

    def save_artifact(self, deployment_id, artifact_type, content):
        try:
            # stored as a detached JSON copy, like the database backend
            content = json.loads(json.dumps(content))
        except (TypeError, ValueError) as e:
            raise RepositoryError(f"encode {artifact_type} artifact: {e}") from e
        with self._lock:
            self._get(deployment_id)
            key = (deployment_id, artifact_type)
            existing = self._artifacts.get(key)
            artifact = Artifact(
                id=existing.id if existing else _new_id(),
                deployment_id=deployment_id,
                artifact_type=artifact_type,
                content=content,
                created_at=existing.created_at if existing else self._clock(),
            )
            self._artifacts[key] = artifact
            return deepcopy(artifact)

    def get_artifact(self, deployment_id, artifact_type):
        with self._lock:
            artifact = self._artifacts.get((deployment_id, artifact_type))
            return deepcopy(artifact) if artifact else None

    def get_artifacts(self, deployment_id):
        with self._lock:
            return [deepcopy(a) for (d, _), a in self._artifacts.items() if d == deployment_id]


#
# SQLite
#

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SQL_SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
CREATE TABLE IF NOT EXISTS deployments (
  id             TEXT PRIMARY KEY,
  org_id         TEXT,
  chain_id       INTEGER NOT NULL UNIQUE,
  stack          TEXT NOT NULL,
  status         TEXT NOT NULL DEFAULT 'pending',
  current_stage  TEXT,
  config         TEXT NOT NULL,
  error_message  TEXT,
  created_at     TEXT NOT NULL,
  updated_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_deployments_status ON deployments(status);
CREATE TABLE IF NOT EXISTS deployment_transactions (
  id             TEXT PRIMARY KEY,
  deployment_id  TEXT NOT NULL REFERENCES deployments(id) ON DELETE CASCADE,
  stage          TEXT NOT NULL,
  tx_hash        TEXT NOT NULL,
  description    TEXT,
  created_at     TEXT NOT NULL,
  UNIQUE(deployment_id, tx_hash)
);
CREATE INDEX IF NOT EXISTS idx_txns_deployment ON deployment_transactions(deployment_id);
CREATE TABLE IF NOT EXISTS deployment_artifacts (
  id             TEXT PRIMARY KEY,
  deployment_id  TEXT NOT NULL REFERENCES deployments(id) ON DELETE CASCADE,
  artifact_type  TEXT NOT NULL,
  content        TEXT NOT NULL,
  created_at     TEXT NOT NULL,
  UNIQUE(deployment_id, artifact_type)
);
CREATE INDEX IF NOT EXISTS idx_artifacts_deployment ON deployment_artifacts(deployment_id);
"""

_DEPLOYMENT_COLUMNS = (
    "id, org_id, chain_id, stack, status, current_stage, config, error_message, "
    "created_at, updated_at"
)


def _to_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _from_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _deployment_from_row(row: tuple) -> Deployment:
    id_, org_id, chain_id, stack, status, stage, config, error, created_at, updated_at = row
    return Deployment(
        id=id_,
        org_id=org_id,
        chain_id=chain_id,
        stack=Stack(stack),
        status=DeploymentStatus(status),
        current_stage=stage,
        config=json.loads(config),
        error_message=error,
        created_at=_from_timestamp(created_at),
        updated_at=_from_timestamp(updated_at),
    )


def _transaction_from_row(row: tuple) -> Transaction:
    id_, deployment_id, stage, tx_hash, description, created_at = row
    return Transaction(
        id=id_,
        deployment_id=deployment_id,
        stage=stage,
        tx_hash=tx_hash,
        description=description,
        created_at=_from_timestamp(created_at),
    )


def _artifact_from_row(row: tuple) -> Artifact:
    id_, deployment_id, artifact_type, content, created_at = row
    return Artifact(
        id=id_,
        deployment_id=deployment_id,
        artifact_type=artifact_type,
        content=json.loads(content),
        created_at=_from_timestamp(created_at),
    )


class SQLiteRepository(Repository):
    """Single-connection SQLite repository, safe to share between worker threads."""

    def __init__(self, path: Union[str, Path] = ":memory:", clock: Clock = _utcnow):
        self._path = str(path)
        self._clock = clock
        self._lock = threading.RLock()
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.executescript(_SQL_SCHEMA)
        self._conn.commit()
        LOGGER.debug("Opened deployment database %s", self._path)

    def __enter__(self) -> "SQLiteRepository":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _select_deployment(self, deployment_id: str) -> Deployment:
        cursor = self._conn.execute(
            f"SELECT {_DEPLOYMENT_COLUMNS} FROM deployments WHERE id = ?", (deployment_id,)
        )
        row = cursor.fetchone()
        if row is None:
            raise DeploymentNotFound(f"deployment not found: {deployment_id}")
        return _deployment_from_row(row)

    def create_deployment(self, chain_id, config, stack=Stack.NITRO, org_id=None):
        stack = parse_stack(stack)
        now = self._clock()
        deployment = Deployment(
            id=_new_id(),
            chain_id=chain_id,
            stack=stack,
            config=dict(config),
            org_id=org_id,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO deployments ({_DEPLOYMENT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        deployment.id,
                        org_id,
                        chain_id,
                        stack.value,
                        deployment.status.value,
                        None,
                        json.dumps(deployment.config),
                        None,
                        _to_timestamp(now),
                        _to_timestamp(now),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateDeployment(f"a deployment for chain {chain_id} already exists") from e
        return deployment

    def get_deployment(self, deployment_id):
        with self._lock:
            return self._select_deployment(deployment_id)

    def get_deployment_by_chain_id(self, chain_id):
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_DEPLOYMENT_COLUMNS} FROM deployments WHERE chain_id = ?", (chain_id,)
            ).fetchone()
        return _deployment_from_row(row) if row else None

    def list_deployments(self, status=None):
        query = f"SELECT {_DEPLOYMENT_COLUMNS} FROM deployments"
        params = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (DeploymentStatus(status).value,)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_deployment_from_row(row) for row in rows]

    def update_deployment_status(self, deployment_id, status, stage=None):
        status = DeploymentStatus(status)
        with self._lock, self._conn:
            deployment = self._select_deployment(deployment_id)
            check_transition(deployment_id, deployment.status, status)
            if status is DeploymentStatus.RUNNING and deployment.status is not status:
                deployment.error_message = None
            deployment.status = status
            if stage is not None:
                deployment.current_stage = stage
            deployment.updated_at = self._clock()
            self._conn.execute(
                "UPDATE deployments SET status = ?, current_stage = ?, error_message = ?, "
                "updated_at = ? WHERE id = ?",
                (
                    status.value,
                    deployment.current_stage,
                    deployment.error_message,
                    _to_timestamp(deployment.updated_at),
                    deployment_id,
                ),
            )
        return deployment

    def set_deployment_error(self, deployment_id, message):
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE deployments SET error_message = ?, updated_at = ? WHERE id = ?",
                (message, _to_timestamp(self._clock()), deployment_id),
            )
            if cursor.rowcount == 0:
                raise DeploymentNotFound(f"deployment not found: {deployment_id}")

    def mark_stale_deployments_failed(self, older_than, message, exclude=()):
        exclude = sorted(set(exclude))
        now = self._clock()
        cutoff = now - timedelta(seconds=older_than)
        query = (
            "UPDATE deployments SET status = ?, error_message = ?, updated_at = ? "
            "WHERE status = ? AND updated_at < ?"
        )
        if exclude:
            query += f" AND id NOT IN ({', '.join('?' * len(exclude))})"
        with self._lock, self._conn:
            cursor = self._conn.execute(
                query,
                (
                    DeploymentStatus.FAILED.value,
                    message,
                    _to_timestamp(now),
                    DeploymentStatus.RUNNING.value,
                    _to_timestamp(cutoff),
                    *exclude,
                ),
            )
            return cursor.rowcount

    def record_transaction(self, deployment_id, stage, tx_hash, description=None):
        transaction = Transaction(
            id=_new_id(),
            deployment_id=deployment_id,
            stage=stage,
            tx_hash=tx_hash,
            description=description,
            created_at=self._clock(),
        )
        with self._lock, self._conn:
            self._select_deployment(deployment_id)
            self._conn.execute(
                "UPDATE deployments SET updated_at = ? WHERE id = ?",
                (_to_timestamp(transaction.created_at), deployment_id),
            )
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO deployment_transactions "
                "(id, deployment_id, stage, tx_hash, description, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    transaction.id,
                    deployment_id,
                    stage,
                    tx_hash,
                    description,
                    _to_timestamp(transaction.created_at),
                ),
            )
            if cursor.rowcount == 0:
                row = self._conn.execute(
                    "SELECT id, deployment_id, stage, tx_hash, description, created_at "
                    "FROM deployment_transactions WHERE deployment_id = ? AND tx_hash = ?",
                    (deployment_id, tx_hash),
                ).fetchone()
                return _transaction_from_row(row)
        return transaction

    def get_transactions(self, deployment_id):
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, deployment_id, stage, tx_hash, description, created_at "
                "FROM deployment_transactions WHERE deployment_id = ? ORDER BY created_at, rowid",
                (deployment_id,),
            ).fetchall()
        return [_transaction_from_row(row) for row in rows]

    def get_transaction_by_hash(self, tx_hash):
        with self._lock:
            row = self._conn.execute(
                "SELECT id, deployment_id, stage, tx_hash, description, created_at "
                "FROM deployment_transactions WHERE tx_hash = ?",
                (tx_hash,),
            ).fetchone()
        return _transaction_from_row(row) if row else None

    def save_artifact(self, deployment_id, artifact_type, content):
        try:
            encoded = json.dumps(content)
        except (TypeError, ValueError) as e:
            raise RepositoryError(f"encode {artifact_type} artifact: {e}") from e
        now = self._clock()
        with self._lock, self._conn:
            self._select_deployment(deployment_id)
            self._conn.execute(
                "INSERT INTO deployment_artifacts "
                "(id, deployment_id, artifact_type, content, created_at) VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT (deployment_id, artifact_type) "
                "DO UPDATE SET content = excluded.content",
                (_new_id(), deployment_id, artifact_type, encoded, _to_timestamp(now)),
            )
            row = self._conn.execute(
                "SELECT id, deployment_id, artifact_type, content, created_at "
                "FROM deployment_artifacts WHERE deployment_id = ? AND artifact_type = ?",
                (deployment_id, artifact_type),
            ).fetchone()
        return _artifact_from_row(row)

    def get_artifact(self, deployment_id, artifact_type):
        with self._lock:
            row = self._conn.execute(
                "SELECT id, deployment_id, artifact_type, content, created_at "
                "FROM deployment_artifacts WHERE deployment_id = ? AND artifact_type = ?",
                (deployment_id, artifact_type),
            ).fetchone()
        return _artifact_from_row(row) if row else None

    def get_artifacts(self, deployment_id):
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, deployment_id, artifact_type, content, created_at "
                "FROM deployment_artifacts WHERE deployment_id = ? ORDER BY created_at, rowid",
                (deployment_id,),
            ).fetchall()
        return [_artifact_from_row(row) for row in rows]


def open_repository(database: Optional[Union[str, Path]] = None) -> Repository:
    """An SQLite repository at `database`, or an in-memory one when unset."""
    if database is None:
        return InMemoryRepository()
    return SQLiteRepository(database)
