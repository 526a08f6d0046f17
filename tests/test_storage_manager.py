"""
Tests para el almacenamiento de artefactos local y en Azure Blob Storage.
"""

from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError

from app.core.v1.exceptions import StorageException
from app.core.v1.storage_manager import AzureBlobArtifactStore, artifact_name, build_artifact_store


class TestArtifactName:
    """Tests de nombres de artefactos."""

    def test_sanitized_and_unique(self):
        """Test que el nombre se limpia y nunca se repite."""
        first = artifact_name("/cases/abc/documents/", "../factura final.pdf")
        second = artifact_name("cases/abc/documents", "../factura final.pdf")

        assert first.startswith("cases/abc/documents/")
        assert first.endswith("_factura_final.pdf")
        assert first != second


class TestLocalArtifactStore:
    """Tests del backend de sistema de archivos."""

    def test_store_fetch_delete(self, artifact_store):
        """Test del ciclo completo de un artefacto."""
        ref = artifact_store.store_artifact(b"contenido", "cases/1/documents/factura.txt")

        assert ref == "local://cases/1/documents/factura.txt"
        assert artifact_store.fetch_artifact(ref) == b"contenido"

        artifact_store.delete_artifact(ref)
        with pytest.raises(StorageException):
            artifact_store.fetch_artifact(ref)
        artifact_store.delete_artifact(ref)

    def test_path_outside_root(self, artifact_store):
        """Test que una ruta fuera de la raíz se rechaza."""
        with pytest.raises(StorageException):
            artifact_store.store_artifact(b"x", "../../fuera.txt")

    def test_foreign_reference(self, artifact_store):
        """Test que una referencia de otro backend se rechaza."""
        with pytest.raises(StorageException):
            artifact_store.fetch_artifact("azure://documents/factura.txt")

    def test_unknown_backend(self):
        with pytest.raises(StorageException):
            build_artifact_store("s3")


class TestAzureBlobArtifactStore:
    """Tests del backend de Azure con un cliente simulado."""

    @pytest.fixture
    def blob_service_client(self):
        client = MagicMock()
        client.get_container_client.return_value.create_container.side_effect = ResourceExistsError("exists")
        return client

    def test_store_and_fetch(self, blob_service_client):
        """Test de carga y descarga de un blob."""
        blob_client = blob_service_client.get_blob_client.return_value
        blob_client.download_blob.return_value.readall.return_value = b"contenido"
        store = AzureBlobArtifactStore(blob_service_client, container_name="liquidaciones")

        ref = store.store_artifact(b"contenido", "cases/1/reports/r.xlsx", "application/octet-stream")

        assert ref == "azure://liquidaciones/cases/1/reports/r.xlsx"
        blob_client.upload_blob.assert_called_once()
        assert store.fetch_artifact(ref) == b"contenido"
        blob_service_client.get_blob_client.assert_called_with(
            container="liquidaciones", blob="cases/1/reports/r.xlsx"
        )

    def test_missing_blob(self, blob_service_client):
        blob_service_client.get_blob_client.return_value.download_blob.side_effect = ResourceNotFoundError("missing")
        store = AzureBlobArtifactStore(blob_service_client, container_name="liquidaciones")

        with pytest.raises(StorageException):
            store.fetch_artifact("azure://liquidaciones/cases/1/documents/f.txt")

    def test_other_container_reference(self, blob_service_client):
        store = AzureBlobArtifactStore(blob_service_client, container_name="liquidaciones")

        with pytest.raises(StorageException):
            store.fetch_artifact("azure://otro/cases/1/documents/f.txt")

    def test_upload_retries_then_fails(self, blob_service_client):
        """Test que la carga se reintenta y termina en StorageException."""
        blob_client = blob_service_client.get_blob_client.return_value
        blob_client.upload_blob.side_effect = AzureError("service unavailable")
        store = AzureBlobArtifactStore(blob_service_client, container_name="liquidaciones")

        with patch("app.core.v1.decorators.time.sleep"):
            with pytest.raises(StorageException):
                store.store_artifact(b"contenido", "cases/1/documents/f.txt")

        assert blob_client.upload_blob.call_count > 1
