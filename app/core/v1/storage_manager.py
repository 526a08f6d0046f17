"""Artifact storage for raw documents and generated reports.

Artifacts are opaque byte blobs addressed by a reference string:
``local://<relative path>`` for the filesystem backend and
``azure://<container>/<blob name>`` for Azure Blob Storage.
"""

import os
import uuid
from pathlib import Path
from typing import Optional

from azure.storage.blob import BlobServiceClient, ContentSettings
from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError

from app.settings.v1.settings import SETTINGS
from app.core.v1.decorators import retry
from app.core.v1.exceptions import RuntimeException, StorageException
from app.core.v1.log_manager import LogManager


def artifact_name(prefix: str, filename: str) -> str:
    """Build a collision free artifact name under a prefix."""
    safe = "".join(ch if ch.isalnum() or ch in "._-" else "_" for ch in os.path.basename(filename))
    return f"{prefix.strip('/')}/{uuid.uuid4().hex}_{safe or 'artifact'}"


class ArtifactStore:
    """Narrow interface the engine needs from an object store."""

    scheme = ""

    def store_artifact(self, content: bytes, name: str, content_type: str = "application/octet-stream") -> str:
        raise NotImplementedError

    def fetch_artifact(self, ref: str) -> bytes:
        raise NotImplementedError

    def delete_artifact(self, ref: str) -> None:
        raise NotImplementedError

    def _strip_scheme(self, ref: str) -> str:
        prefix = f"{self.scheme}://"
        if not ref or not ref.startswith(prefix):
            raise StorageException(f"Artifact reference '{ref}' does not belong to the {self.scheme} backend")
        return ref[len(prefix):]


class LocalArtifactStore(ArtifactStore):
    """Filesystem backend, used in development and tests."""

    scheme = "local"

    def __init__(self, root: Optional[str] = None):
        self.logger = LogManager(__name__)
        self.root = Path(root or SETTINGS.GENERAL.ARTIFACT_LOCAL_DIR).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if self.root not in path.parents:
            raise StorageException(f"Artifact path escapes the storage root: {relative}")
        return path

    def store_artifact(self, content: bytes, name: str, content_type: str = "application/octet-stream") -> str:
        try:
            path = self._path(name)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as err:
            self.logger.error(f"Local artifact write failed: {err}", name=name)
            raise StorageException(f"Upload failed: {err}") from err

        self.logger.info("Artifact stored", name=name, size=len(content), content_type=content_type)
        return f"{self.scheme}://{name}"

    def fetch_artifact(self, ref: str) -> bytes:
        path = self._path(self._strip_scheme(ref))
        try:
            return path.read_bytes()
        except FileNotFoundError as err:
            raise StorageException(f"Artifact not found: {ref}") from err
        except OSError as err:
            self.logger.error(f"Local artifact read failed: {err}", ref=ref)
            raise StorageException(f"Download failed: {err}") from err

    def delete_artifact(self, ref: str) -> None:
        path = self._path(self._strip_scheme(ref))
        try:
            path.unlink()
        except FileNotFoundError:
            self.logger.warning("Artifact already deleted", ref=ref)
        except OSError as err:
            raise StorageException(f"Delete failed: {err}") from err


class AzureBlobArtifactStore(ArtifactStore):
    """
    Azure Blob Storage backend.
    """

    scheme = "azure"

    def __init__(self, blob_service_client: Optional[BlobServiceClient] = None, container_name: Optional[str] = None):
        """
        Initialize the Blob Storage backend.

        Args:
            blob_service_client (Optional[BlobServiceClient]): Pre-built client,
                built from the connection string when omitted.
            container_name (Optional[str]): Container holding the artifacts.
        """
        self.logger = LogManager(__name__)
        self.container_name = container_name or SETTINGS.AZURE.AZURE_STORAGE_CONTAINER_NAME

        if blob_service_client is None:
            if not SETTINGS.AZURE.AZURE_STORAGE_CONNECTION_STRING:
                raise StorageException("AZURE_STORAGE_CONNECTION_STRING is required for the azure artifact backend")
            blob_service_client = BlobServiceClient.from_connection_string(
                SETTINGS.AZURE.AZURE_STORAGE_CONNECTION_STRING,
                connection_timeout=60,
                read_timeout=120
            )
        self.blob_service_client = blob_service_client

        self._ensure_container_exists()
        self.logger.info("Azure artifact store initialized", container_name=self.container_name)

    def _ensure_container_exists(self):
        try:
            self.blob_service_client.get_container_client(self.container_name).create_container()
            self.logger.info("Container created", container_name=self.container_name)
        except ResourceExistsError:
            self.logger.debug("Container already exists", container_name=self.container_name)
        except AzureError as err:
            self.logger.error(f"Failed to create container: {err}")
            raise StorageException(f"Container creation failed: {err}") from err

    def _blob_name(self, ref: str) -> str:
        container, _, blob_name = self._strip_scheme(ref).partition("/")
        if container != self.container_name or not blob_name:
            raise StorageException(f"Artifact reference '{ref}' does not belong to container {self.container_name}")
        return blob_name

    def store_artifact(self, content: bytes, name: str, content_type: str = "application/octet-stream") -> str:
        try:
            self._upload(content, name, content_type)
        except RuntimeException as err:
            raise StorageException(f"Upload failed: {err.message}") from err
        return f"{self.scheme}://{self.container_name}/{name}"

    @retry(exceptions=(AzureError,))
    def _upload(self, content: bytes, name: str, content_type: str):
        blob_client = self.blob_service_client.get_blob_client(container=self.container_name, blob=name)
        blob_client.upload_blob(
            data=content,
            blob_type="BlockBlob",
            content_settings=ContentSettings(content_type=content_type),
            overwrite=True
        )
        self.logger.info("Artifact uploaded", blob_name=name, size=len(content))

    def fetch_artifact(self, ref: str) -> bytes:
        blob_name = self._blob_name(ref)
        try:
            blob_client = self.blob_service_client.get_blob_client(container=self.container_name, blob=blob_name)
            return blob_client.download_blob().readall()
        except ResourceNotFoundError as err:
            raise StorageException(f"Artifact not found: {ref}") from err
        except AzureError as err:
            self.logger.error(f"Azure Storage download failed: {err}", ref=ref)
            raise StorageException(f"Download failed: {err}") from err

    def delete_artifact(self, ref: str) -> None:
        blob_name = self._blob_name(ref)
        try:
            self.blob_service_client.get_blob_client(container=self.container_name, blob=blob_name).delete_blob()
        except ResourceNotFoundError:
            self.logger.warning("Artifact already deleted", ref=ref)
        except AzureError as err:
            raise StorageException(f"Delete failed: {err}") from err


def build_artifact_store(backend: Optional[str] = None) -> ArtifactStore:
    """Build the artifact backend named by SETTINGS.GENERAL.ARTIFACT_BACKEND."""
    backend = (backend or SETTINGS.GENERAL.ARTIFACT_BACKEND).lower()
    if backend == "local":
        return LocalArtifactStore()
    if backend == "azure":
        return AzureBlobArtifactStore()
    raise StorageException(f"Unknown artifact backend: {backend}")
