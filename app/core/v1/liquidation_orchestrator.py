"""Liquidation orchestrator: the state machine of one case liquidation.

pending -> in_process -> validated -> liquidated | with_glosas -> finalized,
with rejected reachable when no document yields line items. A run holds
the per-case lease for its whole duration; a second run on the same case
fails immediately with ``ConcurrencyError``.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from bson import ObjectId

from app.core.v1.amounts import ZERO, quantize_amount, sum_amounts
from app.core.v1.case_repository import CaseRepository
from app.core.v1.contract_lookup import ContractLookup
from app.core.v1.exceptions import (
    ContractLookupException,
    ContractLookupTimeout,
    DatabaseException,
    ExtractionError,
    LiquidationCancelledError,
    LiquidationException,
    ReconciliationError,
    RuleEvaluationError,
    StateTransitionError,
    StorageException,
    ValidationException,
)
from app.core.v1.line_item_extractor import LineItemExtractor
from app.core.v1.log_manager import LogManager
from app.core.v1.models import (
    Case,
    CaseState,
    Diagnostic,
    DiagnosticSeverity,
    Document,
    ExtractionOutcome,
    ExtractionStatus,
    LineItem,
    LiquidationResult,
    RuleAppliedEvent,
    StateChangedEvent,
)
from app.core.v1.report_generator import ReportGenerator
from app.core.v1.rule_conditions import CaseAggregate
from app.core.v1.rule_evaluator import GlosaEngine
from app.core.v1.rule_store import RuleStore
from app.core.v1.storage_manager import ArtifactStore, artifact_name
from app.core.v1.validators import CaseValidator
from app.settings.v1.general import SETTINGS

RUNNABLE_STATES = frozenset({
    CaseState.PENDING,
    CaseState.IN_PROCESS,
    CaseState.VALIDATED,
    CaseState.LIQUIDATED,
    CaseState.WITH_GLOSAS,
})
FINALIZABLE_STATES = frozenset({CaseState.LIQUIDATED, CaseState.WITH_GLOSAS})


class CancellationToken:
    """Cooperative cancellation flag shared between a run and its caller."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str):
        if self.cancelled:
            raise LiquidationCancelledError(
                f"Liquidation cancelled during {stage}",
                [f"La liquidación fue cancelada ({stage}); el caso volvió a su estado anterior"]
            )


class LiquidationRun(NamedTuple):
    case_id: str
    run_id: str
    future: Future


class LiquidationOrchestrator:
    """
    Sequences extraction, evaluation, aggregation and reporting for a case.

    Collaborators are injected; the orchestrator owns only its thread pools
    and the cancellation tokens of runs started in this process.
    """

    def __init__(
        self,
        repository: CaseRepository,
        rule_store: RuleStore,
        artifact_store: ArtifactStore,
        extractor: Optional[LineItemExtractor] = None,
        glosa_engine: Optional[GlosaEngine] = None,
        report_generator: Optional[ReportGenerator] = None,
        contract_lookup: Optional[ContractLookup] = None,
        extraction_workers: Optional[int] = None,
        run_workers: Optional[int] = None,
        lease_seconds: Optional[int] = None
    ):
        self.logger = LogManager(__name__)
        self.repository = repository
        self.rule_store = rule_store
        self.artifact_store = artifact_store
        self.extractor = extractor or LineItemExtractor()
        self.glosa_engine = glosa_engine or GlosaEngine()
        self.report_generator = report_generator or ReportGenerator()
        self.contract_lookup = contract_lookup
        self.extraction_workers = extraction_workers or SETTINGS.EXTRACTION_MAX_WORKERS
        self.lease_seconds = lease_seconds or SETTINGS.LIQUIDATION_LEASE_SECONDS

        self._executor = ThreadPoolExecutor(
            max_workers=run_workers or SETTINGS.LIQUIDATION_RUN_WORKERS,
            thread_name_prefix="liquidation"
        )
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    # Public operations

    def liquidate(self, case_id: str, cancel_token: Optional[CancellationToken] = None) -> LiquidationResult:
        """Run a liquidation synchronously.

        Args:
            case_id (str): Case to liquidate.
            cancel_token (Optional[CancellationToken]): Token the caller may
                cancel from another thread.

        Returns:
            LiquidationResult: The new current result.

        Raises:
            ConcurrencyError: If a run is already active for the case.
            ValidationException: If the case cannot be liquidated (no
                documents, closed state). The case is left untouched.
            ExtractionError: If no document yielded line items (case rejected).
            RuleEvaluationError: If a rule is malformed (case back to validated).
            ReconciliationError: If the report does not reconcile.
            LiquidationCancelledError: If the run was cancelled and rolled back.
        """
        case_id = CaseValidator.validate_object_id(case_id)
        run_id = uuid.uuid4().hex
        token = cancel_token or CancellationToken()

        self.repository.acquire_lease(case_id, run_id, self.lease_seconds)
        self._register(case_id, token)
        try:
            return self._run(case_id, run_id, token)
        finally:
            self._release(case_id, run_id)

    def submit(self, case_id: str) -> LiquidationRun:
        """Start a liquidation in the background.

        The lease and the preconditions are checked before returning, so a
        busy or invalid case is reported to the caller right away.

        Returns:
            LiquidationRun: Run identifiers and the future of its result.
        """
        case_id = CaseValidator.validate_object_id(case_id)
        run_id = uuid.uuid4().hex

        self.repository.acquire_lease(case_id, run_id, self.lease_seconds)
        try:
            case = self.repository.get_case(case_id)
            self._check_runnable(case, self.repository.list_documents(case_id))
        except Exception:
            self.repository.release_lease(case_id, run_id)
            raise

        token = CancellationToken()
        self._register(case_id, token)
        future = self._executor.submit(self._run_in_background, case_id, run_id, token)
        self.logger.info("Liquidation submitted", case_id=case_id, run_id=run_id)
        return LiquidationRun(case_id=case_id, run_id=run_id, future=future)

    def cancel(self, case_id: str) -> bool:
        """Request cancellation of the run active for a case in this process."""
        with self._lock:
            token = self._tokens.get(case_id)
        if token is None:
            return False
        token.cancel()
        self.logger.info("Liquidation cancellation requested", case_id=case_id)
        return True

    def finalize(self, case_id: str) -> Case:
        """Close a liquidated case.

        Raises:
            StateTransitionError: If the case is not liquidated or with_glosas.
            ConcurrencyError: If a run is active for the case.
        """
        case_id = CaseValidator.validate_object_id(case_id)
        owner = f"finalize-{uuid.uuid4().hex}"
        self.repository.acquire_lease(case_id, owner, self.lease_seconds)
        try:
            case = self.repository.get_case(case_id)
            if case.state not in FINALIZABLE_STATES:
                raise StateTransitionError(
                    f"Case {case_id} is {case.state.value}; only liquidated cases can be finalized"
                )
            if self.repository.get_liquidation_result(case_id) is None:
                raise StateTransitionError(f"Case {case_id} has no liquidation result to finalize")
            return self._transition(case, CaseState.FINALIZED, None, "Liquidación confirmada")
        finally:
            self.repository.release_lease(case_id, owner)

    def get_liquidation_result(self, case_id: str) -> Optional[LiquidationResult]:
        return self.repository.get_liquidation_result(case_id)

    def list_liquidation_history(self, case_id: str) -> List[LiquidationResult]:
        return self.repository.list_liquidation_results(case_id)

    def fetch_report(self, case_id: str) -> Tuple[str, bytes]:
        """Get the file name and bytes of the current report.

        Raises:
            StorageException: If the case has no stored report.
        """
        result = self.repository.get_liquidation_result(case_id)
        if result is None or not result.report_ref:
            raise StorageException(f"Case {case_id} has no stored report")
        return result.report_filename or "liquidacion.xlsx", self.artifact_store.fetch_artifact(result.report_ref)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    # Run

    def _run_in_background(self, case_id: str, run_id: str, token: CancellationToken) -> LiquidationResult:
        try:
            return self._run(case_id, run_id, token)
        except LiquidationException as err:
            self.logger.warning("Background liquidation ended with error", case_id=case_id, error=err.message)
            raise
        except Exception as err:
            self.logger.error(f"Background liquidation failed: {err}", case_id=case_id, run_id=run_id)
            raise
        finally:
            self._release(case_id, run_id)

    def _run(self, case_id: str, run_id: str, token: CancellationToken) -> LiquidationResult:
        log = self.logger.bind(case_id=case_id, run_id=run_id)
        case = self.repository.get_case(case_id)
        documents = self.repository.list_documents(case_id)
        self._check_runnable(case, documents)

        pre_run = case.model_copy(deep=True)
        messages: List[str] = []
        if case.state == CaseState.IN_PROCESS:
            messages.append("Se retomó una liquidación que había quedado en proceso")

        log.info("Liquidation started", state=case.state.value, documents=len(documents))
        case = self._transition(case.model_copy(update={"messages": []}), CaseState.IN_PROCESS, run_id)

        try:
            return self._execute(case, documents, run_id, token, messages, log)
        except (ExtractionError, RuleEvaluationError, ReconciliationError):
            raise
        except LiquidationCancelledError as err:
            log.warning("Liquidation cancelled, restoring pre-run state", stage=err.message)
            self._restore(pre_run, run_id, messages + err.messages)
            err.messages = messages + err.messages
            raise
        except Exception as err:
            log.error(f"Liquidation failed unexpectedly: {err}")
            self._restore(pre_run, run_id, messages + [f"La liquidación falló: {err}"])
            raise

    def _execute(
        self,
        case: Case,
        documents: List[Document],
        run_id: str,
        token: CancellationToken,
        messages: List[str],
        log: LogManager
    ) -> LiquidationResult:
        case = self._refresh_contracted_value(case, messages, log)

        token.check("extracción de documentos")
        outcomes = self._extract_all(documents, token, log)

        documents = [
            document.model_copy(update={
                "extraction_status": outcome.status,
                "line_items": outcome.line_items,
                "diagnostics": outcome.diagnostics,
            })
            for document, outcome in zip(documents, outcomes)
        ]
        messages.extend(self._diagnostic_messages(documents))
        line_items: List[LineItem] = [item for document in documents for item in document.line_items]
        failed = sum(1 for document in documents if document.extraction_status == ExtractionStatus.FAILED)

        if not line_items:
            messages.append("Ningún documento produjo ítems facturados; el caso fue rechazado")
            self.repository.save_documents(documents)
            self._transition(case.model_copy(update={"messages": messages}), CaseState.REJECTED, run_id,
                             "Sin ítems facturados")
            log.warning("Liquidation rejected, no line items", failed_documents=failed)
            raise ExtractionError(f"No line items could be extracted for case {case.case_id}", messages)

        total_billed = sum_amounts(item.subtotal for item in line_items)
        case = self._transition(
            case.model_copy(update={
                "total_billed": total_billed,
                "validation_count": case.validation_count + 1,
                "messages": list(messages),
            }),
            CaseState.VALIDATED,
            run_id
        )

        token.check("antes de evaluar reglas")
        aggregate = CaseAggregate(
            case_id=case.case_id,
            eps=case.eps,
            nit=case.nit,
            range=case.range,
            total_billed=total_billed,
            contracted_value=case.contracted_value,
            line_count=len(line_items),
            document_count=len(documents),
            failed_document_count=failed,
            attention_type=case.attention_type,
            invoice_number=case.invoice_number
        )

        try:
            snapshot = self.rule_store.snapshot(case.range, case.eps)
            outcome = self.glosa_engine.evaluate(line_items, aggregate, snapshot)
        except RuleEvaluationError as err:
            messages.extend(err.messages)
            self.repository.save_documents(documents)
            self.repository.retire_current_result(case.case_id)
            self.repository.save_case(case.model_copy(update={"messages": messages}))
            err.messages = list(messages)
            log.error("Rule evaluation failed, case kept validated", rule_id=err.rule_id)
            raise

        messages.extend(outcome.messages)
        total_glosa = sum_amounts(glosa.amount for glosa in outcome.glosas)
        final_payable = quantize_amount(max(ZERO, total_billed - total_glosa))
        final_state = CaseState.WITH_GLOSAS if outcome.glosas else CaseState.LIQUIDATED
        messages.append(self._summary_message(total_billed, total_glosa, final_payable, len(outcome.glosas)))

        final_case = case.model_copy(update={
            "state": final_state,
            "glosa_count": len(outcome.glosas),
            "messages": list(messages),
        })
        result = LiquidationResult(
            result_id=str(ObjectId()),
            case_id=case.case_id,
            run_id=run_id,
            case_snapshot=final_case,
            line_items=line_items,
            total_billed=total_billed,
            total_glosa=total_glosa,
            final_payable=final_payable,
            rules_applied=outcome.rules_applied,
            glosas=outcome.glosas,
            messages=list(messages),
            rules_evaluated=outcome.rules_evaluated
        )

        token.check("después de evaluar reglas")
        try:
            artifact = self.report_generator.render(result)
        except ReconciliationError as err:
            messages.extend(err.messages)
            self.repository.save_documents(documents)
            self.repository.retire_current_result(case.case_id)
            self.repository.save_case(case.model_copy(update={"messages": messages}))
            err.messages = list(messages)
            log.error("Report reconciliation failed, case kept validated")
            raise

        token.check("antes de guardar el resultado")
        report_ref = None
        try:
            report_ref = self.artifact_store.store_artifact(
                artifact.content,
                artifact_name(f"cases/{case.case_id}/reports", artifact.filename),
                artifact.content_type
            )
        except StorageException as err:
            messages.append(f"No fue posible almacenar el reporte: {err.message}")
            log.error("Report could not be stored", error=err.message)

        report_generated = report_ref is not None
        final_case = final_case.model_copy(update={
            "report_generated": report_generated,
            "report_ref": report_ref,
            "messages": list(messages),
        })
        result = result.model_copy(update={
            "case_snapshot": final_case,
            "messages": list(messages),
            "report_generated": report_generated,
            "report_ref": report_ref,
            "report_filename": artifact.filename if report_generated else None,
        })

        self.repository.save_documents(documents)
        for applied in outcome.rules_applied:
            self.repository.append_event(
                RuleAppliedEvent(
                    case_id=case.case_id,
                    run_id=run_id,
                    rule_id=applied.rule_id,
                    rule_version=applied.rule_version,
                    matches=applied.matches,
                    amount=applied.amount
                )
            )
        self._transition(final_case.model_copy(update={"state": case.state}), final_state, run_id)
        # Until this write the previous result stays current.
        result = self.repository.save_result(result)

        log.info(
            "Liquidation completed",
            state=final_state.value,
            total_billed=str(total_billed),
            total_glosa=str(total_glosa),
            final_payable=str(final_payable)
        )
        return result

    # Steps

    def _check_runnable(self, case: Case, documents: List[Document]):
        if case.state not in RUNNABLE_STATES:
            raise StateTransitionError(
                f"Case {case.case_id} is {case.state.value} and cannot be liquidated again"
            )
        if not case.eps or not case.nit:
            raise ValidationException(f"Case {case.case_id} is missing its EPS or NIT")
        if not documents:
            raise ValidationException(f"Case {case.case_id} has no documents to liquidate")

    def _refresh_contracted_value(self, case: Case, messages: List[str], log: LogManager) -> Case:
        if self.contract_lookup is None or not self.contract_lookup.enabled:
            return case

        known = case.contracted_value
        try:
            value = self.contract_lookup.lookup(case.nit, case.eps)
        except ContractLookupTimeout:
            messages.append(
                f"La consulta del valor contratado excedió el tiempo límite; se usa el último valor conocido ({known})"
            )
            return case
        except ContractLookupException as err:
            messages.append(
                f"La consulta del valor contratado falló ({err.message}); se usa el último valor conocido ({known})"
            )
            return case

        if value is None or value == known:
            return case
        log.info("Contracted value updated", previous=str(known), current=str(value))
        messages.append(f"Valor contratado actualizado de {known} a {value}")
        return case.model_copy(update={"contracted_value": value})

    def _extract_all(
        self,
        documents: List[Document],
        token: CancellationToken,
        log: LogManager
    ) -> List[ExtractionOutcome]:
        """Extract every document concurrently; outcomes follow upload order."""
        outcomes: Dict[str, ExtractionOutcome] = {}

        with ThreadPoolExecutor(max_workers=self.extraction_workers, thread_name_prefix="extraction") as executor:
            future_to_document = {
                executor.submit(self._extract_one, document, token): document
                for document in documents
            }
            for future in as_completed(future_to_document):
                document = future_to_document[future]
                outcome = future.result()
                if outcome is not None:
                    outcomes[document.document_id] = outcome
                if token.cancelled:
                    for pending in future_to_document:
                        pending.cancel()
                    break

        token.check("extracción de documentos")
        log.info("Documents extracted", documents=len(outcomes))
        return [outcomes[document.document_id] for document in documents]

    def _extract_one(self, document: Document, token: CancellationToken) -> Optional[ExtractionOutcome]:
        if token.cancelled:
            return None
        try:
            content = self.repository.fetch_document_content(document)
        except StorageException as err:
            return ExtractionOutcome(
                document_id=document.document_id,
                status=ExtractionStatus.FAILED,
                diagnostics=[
                    Diagnostic(
                        severity=DiagnosticSeverity.ERROR,
                        message=f"No fue posible obtener el documento '{document.filename}': {err.message}",
                        document_id=document.document_id
                    )
                ]
            )
        return self.extractor.extract(document, content)

    @staticmethod
    def _diagnostic_messages(documents: List[Document]) -> List[str]:
        messages = []
        for document in documents:
            for diagnostic in document.diagnostics:
                prefix = "Error" if diagnostic.severity == DiagnosticSeverity.ERROR else "Advertencia"
                messages.append(f"{prefix} en documento '{document.filename}': {diagnostic.message}")
        return messages

    @staticmethod
    def _summary_message(total_billed: Decimal, total_glosa: Decimal, final_payable: Decimal, glosas: int) -> str:
        return (
            f"Liquidación completada: facturado {total_billed}, glosado {total_glosa} "
            f"en {glosas} glosa(s), valor a pagar {final_payable}"
        )

    # State

    def _transition(
        self,
        case: Case,
        to_state: CaseState,
        run_id: Optional[str],
        reason: Optional[str] = None
    ) -> Case:
        from_state = case.state
        case = self.repository.save_case(case.model_copy(update={"state": to_state}))
        self.repository.append_event(
            StateChangedEvent(
                case_id=case.case_id,
                run_id=run_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason
            )
        )
        return case

    def _restore(self, pre_run: Case, run_id: str, messages: List[str]):
        """Put the case back as it was before the run, keeping the run messages."""
        try:
            current = self.repository.get_case(pre_run.case_id)
            self._transition(
                pre_run.model_copy(update={"messages": messages, "state": current.state}),
                pre_run.state,
                run_id,
                "Liquidación revertida"
            )
        except DatabaseException as err:
            self.logger.error(f"Could not restore case after failed run: {err.message}", case_id=pre_run.case_id)

    def _register(self, case_id: str, token: CancellationToken):
        with self._lock:
            self._tokens[case_id] = token

    def _release(self, case_id: str, run_id: str):
        with self._lock:
            self._tokens.pop(case_id, None)
        self.repository.release_lease(case_id, run_id)
