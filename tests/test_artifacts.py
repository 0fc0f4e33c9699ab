import pytest
import responses

from deployment.artifacts import ArtifactStore, compute_checksum
from deployment.constants import ARTIFACT_CHECKSUMS, ARTIFACT_VERSION, REQUIRED_CONTRACTS
from deployment.exceptions import (
    ArtifactError,
    ArtifactIntegrityError,
    MissingContractsError,
)

BASE_URL = "https://artifacts.test"
VERSION = "v9.9.9"


def test_default_version_has_registered_checksum():
    assert ARTIFACT_VERSION in ARTIFACT_CHECKSUMS
    assert ARTIFACT_CHECKSUMS[ARTIFACT_VERSION].startswith("sha256:")


@responses.activate
def test_load_bundle_from_url(artifact_zip, tmp_path):
    responses.add(
        responses.GET, f"{BASE_URL}/{VERSION}.zip", body=artifact_zip.read_bytes(), status=200
    )
    store = ArtifactStore(
        base_url=BASE_URL,
        cache_dir=tmp_path / "cache",
        checksums={VERSION: compute_checksum(artifact_zip)},
    )

    bundle = store.load(version=VERSION)

    assert bundle.version == VERSION
    assert bundle.source_url == f"{BASE_URL}/{VERSION}.zip"
    assert set(bundle) == set(REQUIRED_CONTRACTS)
    assert "RollupCreator" in bundle
    assert "README" not in bundle
    assert bundle["RollupCreator"].function_abi("createRollup")["name"] == "createRollup"
    # the downloaded archive is not left behind
    assert list((tmp_path / "cache").iterdir()) == []


@responses.activate
def test_checksum_mismatch_is_refused(artifact_zip, tmp_path):
    responses.add(
        responses.GET, f"{BASE_URL}/{VERSION}.zip", body=artifact_zip.read_bytes(), status=200
    )
    store = ArtifactStore(
        base_url=BASE_URL,
        cache_dir=tmp_path,
        checksums={VERSION: "sha256:" + "0" * 64},
    )

    with pytest.raises(ArtifactIntegrityError, match="checksum mismatch"):
        store.load(version=VERSION)


@responses.activate
def test_unregistered_version_is_refused_before_download(tmp_path):
    store = ArtifactStore(base_url=BASE_URL, cache_dir=tmp_path, checksums={})

    with pytest.raises(ArtifactIntegrityError, match="no checksum registered"):
        store.load(version=VERSION)
    assert len(responses.calls) == 0


@responses.activate
def test_unverified_load_when_checks_disabled(artifact_zip, tmp_path):
    responses.add(
        responses.GET, f"{BASE_URL}/{VERSION}.zip", body=artifact_zip.read_bytes(), status=200
    )
    store = ArtifactStore(
        base_url=BASE_URL, cache_dir=tmp_path, checksums={}, verify_checksums=False
    )

    bundle = store.load(version=VERSION)
    assert len(bundle) == len(REQUIRED_CONTRACTS)


@responses.activate
def test_download_failure(tmp_path):
    responses.add(responses.GET, f"{BASE_URL}/{VERSION}.zip", status=404)
    store = ArtifactStore(base_url=BASE_URL, cache_dir=tmp_path, checksums={VERSION: "sha256:00"})

    with pytest.raises(ArtifactError, match="download artifacts"):
        store.load(version=VERSION)


def test_load_from_directory(artifact_dir):
    bundle = ArtifactStore().load(str(artifact_dir), version="v3.2.0")

    assert bundle.version == "v3.2.0"
    assert bundle.source_url.startswith("file://")
    assert set(bundle) == set(REQUIRED_CONTRACTS)


def test_missing_contracts_are_named(artifact_dir):
    (artifact_dir / "RollupCreator.json").unlink()
    (artifact_dir / "Reader4844.json").unlink()

    with pytest.raises(MissingContractsError) as error:
        ArtifactStore().load(str(artifact_dir))
    assert error.value.missing == ["Reader4844", "RollupCreator"]


def test_deployment_data_appends_constructor_arguments(bundle):
    inbox = bundle["Inbox"]
    data = inbox.deployment_data(117964)
    assert data[: len(inbox.bytecode)] == inbox.bytecode
    assert len(data) == len(inbox.bytecode) + 32

    with pytest.raises(ArtifactError):
        inbox.deployment_data()


def test_unknown_contract_lookup(bundle):
    with pytest.raises(ArtifactError, match="not part of artifact bundle"):
        bundle["Nonexistent"]
