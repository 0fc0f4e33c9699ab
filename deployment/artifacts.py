import hashlib
import json
import logging
import os
import tempfile
import uuid
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import requests
from eth_abi import encode
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes

from deployment.constants import (
    ARTIFACT_BASE_URL,
    ARTIFACT_CHECKSUMS,
    ARTIFACT_DOWNLOAD_TIMEOUT,
    ARTIFACT_VERSION,
    REQUIRED_CONTRACTS,
)
from deployment.exceptions import (
    ArtifactError,
    ArtifactFormatError,
    ArtifactIntegrityError,
    MissingContractsError,
)

LOGGER = logging.getLogger(__name__)

LOCAL_ARTIFACT_VERSION = "local"
CHECKSUM_ALGORITHM = "sha256"


def _normalize_bytecode(name: str, value: Any, required: bool = True) -> HexBytes:
    """Accepts '0x...' or {'object': '0x...'} bytecode and returns raw bytes."""
    if isinstance(value, dict):
        value = value.get("object")
    if value is None or value in ("", "0x"):
        if required:
            raise ArtifactFormatError(f"{name}: artifact has no bytecode")
        return HexBytes(b"")
    if not isinstance(value, str):
        raise ArtifactFormatError(f"{name}: unsupported bytecode format {type(value).__name__}")
    if not value.startswith("0x"):
        value = f"0x{value}"
    try:
        return HexBytes(value)
    except ValueError as e:
        raise ArtifactFormatError(f"{name}: bytecode is not valid hex") from e


@dataclass(frozen=True)
class ContractArtifact:
    """Compiled contract: ABI plus creation and runtime bytecode."""

    name: str
    abi: Tuple[Dict[str, Any], ...]
    bytecode: HexBytes
    deployed_bytecode: HexBytes = field(default_factory=lambda: HexBytes(b""))

    @classmethod
    def from_json(cls, name: str, data: Dict[str, Any]) -> "ContractArtifact":
        if not isinstance(data, dict):
            raise ArtifactFormatError(f"{name}: artifact is not a JSON object")
        abi = data.get("abi")
        if not isinstance(abi, list):
            raise ArtifactFormatError(f"{name}: artifact has no ABI")
        return cls(
            name=data.get("contractName") or name,
            abi=tuple(abi),
            bytecode=_normalize_bytecode(name, data.get("bytecode")),
            deployed_bytecode=_normalize_bytecode(
                name, data.get("deployedBytecode"), required=False
            ),
        )

    @property
    def constructor_abi(self) -> Optional[Dict[str, Any]]:
        for element in self.abi:
            if element.get("type") == "constructor":
                return element
        return None

    @property
    def constructor_inputs(self) -> List[Dict[str, Any]]:
        constructor = self.constructor_abi
        return list(constructor.get("inputs", [])) if constructor else []

    def function_abi(self, name: str) -> Dict[str, Any]:
        for element in self.abi:
            if element.get("type") == "function" and element.get("name") == name:
                return element
        raise ArtifactError(f"{self.name} ABI has no function '{name}'")

    def event_abi(self, name: str) -> Dict[str, Any]:
        for element in self.abi:
            if element.get("type") == "event" and element.get("name") == name:
                return element
        raise ArtifactError(f"{self.name} ABI has no event '{name}'")

    def deployment_data(self, *args) -> HexBytes:
        """Returns creation bytecode followed by the ABI-encoded constructor arguments."""
        inputs = self.constructor_inputs
        if len(args) != len(inputs):
            raise ArtifactError(
                f"{self.name} constructor takes {len(inputs)} argument(s), got {len(args)}"
            )
        if not inputs:
            return self.bytecode
        types = [collapse_if_tuple(abi_input) for abi_input in inputs]
        return HexBytes(self.bytecode + encode(types, list(args)))


class ArtifactBundle(Mapping):
    """The full required contract set for one artifact version."""

    def __init__(
        self,
        contracts: Dict[str, ContractArtifact],
        version: str,
        source_url: str,
        loaded_at: Optional[datetime] = None,
    ):
        self._contracts = dict(contracts)
        self.version = version
        self.source_url = source_url
        self.loaded_at = loaded_at or datetime.now(timezone.utc)

    def __getitem__(self, name: str) -> ContractArtifact:
        try:
            return self._contracts[name]
        except KeyError:
            raise ArtifactError(f"contract '{name}' is not part of artifact bundle") from None

    def __contains__(self, name: object) -> bool:
        return name in self._contracts

    def __iter__(self) -> Iterator[str]:
        return iter(self._contracts)

    def __len__(self) -> int:
        return len(self._contracts)

    def __repr__(self) -> str:
        return f"<ArtifactBundle {self.version} ({len(self)} contracts) from {self.source_url}>"


def compute_checksum(filepath: Path) -> str:
    digest = hashlib.sha256()
    with open(filepath, "rb") as file:
        for chunk in iter(lambda: file.read(1 << 16), b""):
            digest.update(chunk)
    return f"{CHECKSUM_ALGORITHM}:{digest.hexdigest()}"


def _contract_name(path: str) -> Optional[str]:
    posix = PurePosixPath(path)
    if posix.suffix != ".json":
        return None
    return posix.stem


class ArtifactStore:
    """
    Loads versioned contract artifact bundles.

    Remote bundles are zip archives at '{base_url}/{version}.zip' and are refused unless their
    sha256 digest matches the registered checksum for that version.
    """

    def __init__(
        self,
        base_url: str = ARTIFACT_BASE_URL,
        cache_dir: Optional[Path] = None,
        checksums: Optional[Dict[str, str]] = None,
        verify_checksums: bool = True,
        required_contracts: Iterable[str] = REQUIRED_CONTRACTS,
        session: Optional[requests.Session] = None,
        timeout: float = ARTIFACT_DOWNLOAD_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache_dir = Path(cache_dir or tempfile.gettempdir())
        self.checksums = ARTIFACT_CHECKSUMS if checksums is None else checksums
        self.verify_checksums = verify_checksums
        self.required_contracts = frozenset(required_contracts)
        self.session = session or requests.Session()
        self.timeout = timeout
        if not verify_checksums:
            LOGGER.warning("Artifact checksum verification is DISABLED; use only in tests")

    def load(self, source: Optional[str] = None, version: Optional[str] = None) -> ArtifactBundle:
        """Loads a bundle from a base URL (default) or from a local directory."""
        source = source or self.base_url
        if source.startswith(("http://", "https://")):
            return self.load_from_url(source, version or ARTIFACT_VERSION)
        return self.load_from_directory(Path(source), version=version)

    def load_from_url(self, base_url: str, version: str) -> ArtifactBundle:
        url = f"{base_url.rstrip('/')}/{version}.zip"
        expected = self._expected_checksum(version)

        LOGGER.info("Downloading contract artifacts %s from %s", version, url)
        filepath = self._download(url, version)
        try:
            actual = compute_checksum(filepath)
            if expected is not None and actual != expected:
                raise ArtifactIntegrityError(
                    f"SECURITY: checksum mismatch for artifact version {version}: "
                    f"expected {expected}, got {actual}"
                )
            LOGGER.info("Verified artifact checksum %s", actual)
            contracts = self._extract_zip(filepath)
        finally:
            filepath.unlink(missing_ok=True)

        self._check_required(contracts)
        LOGGER.info("Loaded %d contract artifacts (%s)", len(contracts), version)
        return ArtifactBundle(contracts=contracts, version=version, source_url=url)

    def load_from_directory(self, directory: Path, version: Optional[str] = None) -> ArtifactBundle:
        if not directory.is_dir():
            raise ArtifactError(f"artifact directory {directory} does not exist")

        contracts = dict()
        for filepath in sorted(directory.rglob("*.json")):
            name = _contract_name(filepath.name)
            if name not in self.required_contracts or name in contracts:
                continue
            with open(filepath, "r") as file:
                contracts[name] = self._parse(name, file.read())

        self._check_required(contracts)
        LOGGER.info("Loaded %d contract artifacts from %s", len(contracts), directory)
        return ArtifactBundle(
            contracts=contracts,
            version=version or LOCAL_ARTIFACT_VERSION,
            source_url=f"file://{directory.resolve()}",
        )

    def _expected_checksum(self, version: str) -> Optional[str]:
        expected = self.checksums.get(version)
        if expected is None and self.verify_checksums:
            raise ArtifactIntegrityError(
                f"SECURITY: no checksum registered for artifact version {version}; "
                "refusing to use an unverified artifact set"
            )
        if not self.verify_checksums:
            return None
        return expected

    def _download(self, url: str, version: str) -> Path:
        """Streams the archive to a private temp file, then renames it into place."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        unique = uuid.uuid4().hex
        partial = self.cache_dir / f"nitro-contracts-{version}-{unique}.zip.part"
        final = self.cache_dir / f"nitro-contracts-{version}-{unique}.zip"
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as file:
                    for chunk in response.iter_content(chunk_size=1 << 16):
                        file.write(chunk)
            os.replace(partial, final)
        except requests.RequestException as e:
            raise ArtifactError(f"download artifacts from {url}: {e}") from e
        finally:
            partial.unlink(missing_ok=True)
        return final

    def _extract_zip(self, filepath: Path) -> Dict[str, ContractArtifact]:
        contracts = dict()
        try:
            with zipfile.ZipFile(filepath) as archive:
                for member in archive.infolist():
                    if member.is_dir():
                        continue
                    name = _contract_name(member.filename)
                    if name not in self.required_contracts or name in contracts:
                        continue
                    contracts[name] = self._parse(name, archive.read(member).decode("utf-8"))
        except zipfile.BadZipFile as e:
            raise ArtifactFormatError(f"open artifact archive: {e}") from e
        return contracts

    @staticmethod
    def _parse(name: str, content: str) -> ContractArtifact:
        try:
            data = json.loads(content)
        except ValueError as e:
            raise ArtifactFormatError(f"parse {name} artifact: {e}") from e
        return ContractArtifact.from_json(name, data)

    def _check_required(self, contracts: Dict[str, ContractArtifact]) -> None:
        missing = self.required_contracts - set(contracts)
        if missing:
            raise MissingContractsError(missing)
