"""
Configuración de pytest y fixtures para los tests del motor de liquidación.

MongoDB se reemplaza por mongomock y los artefactos se guardan en el
sistema de archivos local dentro de tmp_path.
"""

from decimal import Decimal

import mongomock
import pytest

from app.core.v1.case_repository import CaseRepository
from app.core.v1.liquidation_orchestrator import LiquidationOrchestrator
from app.core.v1.models import Case
from app.core.v1.mongodb_manager import MongoDBManager
from app.core.v1.rule_store import RuleStore
from app.core.v1.storage_manager import LocalArtifactStore


@pytest.fixture
def mongo_client():
    """Cliente de MongoDB en memoria."""
    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture
def mongodb_manager(mongo_client):
    """Manejador de MongoDB con los índices del motor creados."""
    return MongoDBManager(client=mongo_client, database_name="liquidaciones_test")


@pytest.fixture
def artifact_store(tmp_path):
    """Almacén de artefactos en el directorio temporal del test."""
    return LocalArtifactStore(str(tmp_path / "artifacts"))


@pytest.fixture
def repository(mongodb_manager, artifact_store):
    return CaseRepository(mongodb_manager, artifact_store)


@pytest.fixture
def rule_store(mongodb_manager):
    return RuleStore(mongodb_manager)


@pytest.fixture
def orchestrator(repository, rule_store, artifact_store):
    """Orquestador sin consulta de valor contratado."""
    orchestrator = LiquidationOrchestrator(
        repository=repository,
        rule_store=rule_store,
        artifact_store=artifact_store,
        extraction_workers=2,
        run_workers=1,
        lease_seconds=60
    )
    yield orchestrator
    orchestrator.shutdown(wait=True)


@pytest.fixture
def case_factory(repository):
    """Crea casos con valores por defecto y número de radicado único."""
    counter = {"value": 0}

    def create(**overrides) -> Case:
        counter["value"] += 1
        data = {
            "case_number": f"RAD-2024-{counter['value']:06d}",
            "eps": "EPS Sura",
            "nit": "900123456-7",
            "biller_name": "Clínica Central S.A.S.",
        }
        data.update(overrides)
        if isinstance(data.get("contracted_value"), (int, str)):
            data["contracted_value"] = Decimal(str(data["contracted_value"]))
        return repository.create_case(data)

    return create
