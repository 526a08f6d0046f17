"""Engine context: builds and owns the collaborators of the liquidation engine."""

from typing import Optional

from app.core.v1.case_repository import CaseRepository
from app.core.v1.contract_lookup import ContractLookup
from app.core.v1.line_item_extractor import LineItemExtractor
from app.core.v1.liquidation_orchestrator import LiquidationOrchestrator
from app.core.v1.log_manager import LogManager
from app.core.v1.mongodb_manager import MongoDBManager
from app.core.v1.ocr_manager import OCRManager
from app.core.v1.report_generator import ReportGenerator
from app.core.v1.rule_evaluator import GlosaEngine
from app.core.v1.rule_store import RuleStore
from app.core.v1.storage_manager import ArtifactStore, build_artifact_store
from app.settings.v1.settings import SETTINGS


class EngineContext:
    """
    Wires the repository, rule store, extractor, evaluator, report generator
    and orchestrator together. One instance lives for the whole process;
    tests build their own with in-memory collaborators.
    """

    def __init__(
        self,
        mongodb_manager: Optional[MongoDBManager] = None,
        artifact_store: Optional[ArtifactStore] = None,
        ocr_manager: Optional[OCRManager] = None,
        contract_lookup: Optional[ContractLookup] = None
    ):
        self.logger = LogManager(__name__)

        self.mongodb_manager = mongodb_manager or MongoDBManager()
        self.artifact_store = artifact_store or build_artifact_store()

        if ocr_manager is None and SETTINGS.AZURE.ocr_enabled:
            ocr_manager = OCRManager()
        self.ocr_manager = ocr_manager

        self.contract_lookup = contract_lookup or ContractLookup()

        self.repository = CaseRepository(self.mongodb_manager, self.artifact_store)
        self.rule_store = RuleStore(self.mongodb_manager)
        self.orchestrator = LiquidationOrchestrator(
            repository=self.repository,
            rule_store=self.rule_store,
            artifact_store=self.artifact_store,
            extractor=LineItemExtractor(self.ocr_manager),
            glosa_engine=GlosaEngine(),
            report_generator=ReportGenerator(),
            contract_lookup=self.contract_lookup
        )

        self.logger.info(
            "Engine context ready",
            artifact_backend=type(self.artifact_store).__name__,
            ocr_enabled=self.ocr_manager is not None,
            contract_lookup_enabled=self.contract_lookup.enabled
        )

    def close(self):
        """Stop background runs and release external connections."""
        self.orchestrator.shutdown(wait=True)
        self.contract_lookup.close()
        self.mongodb_manager.close()
        self.logger.info("Engine context closed")
