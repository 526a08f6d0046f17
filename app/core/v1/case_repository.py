"""Case repository: system of record for cases, documents and results.

Also owns the append-only case event log and the per-case liquidation
lease that serializes runs across processes.
"""

import time
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.v1.exceptions import (
    CaseNotFoundException,
    ConcurrencyError,
    DatabaseException,
    StateTransitionError,
    StorageException,
    ValidationException,
)
from app.core.v1.log_manager import LogManager
from app.core.v1.models import (
    CASE_EVENT_ADAPTER,
    TERMINAL_STATES,
    Case,
    CaseCreatedEvent,
    CaseDraft,
    CaseEvent,
    CaseState,
    Document,
    DocumentAttachedEvent,
    LiquidationResult,
    utc_now,
)
from app.core.v1.mongodb_manager import MongoDBManager
from app.core.v1.storage_manager import ArtifactStore, artifact_name
from app.core.v1.validators import CaseValidator
from app.settings.v1.general import SETTINGS


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


class CaseRepository:
    """
    Persists cases, documents, liquidation results and case events.
    """

    def __init__(self, mongodb_manager: MongoDBManager, artifact_store: ArtifactStore):
        """
        Initialize the repository.

        Args:
            mongodb_manager (MongoDBManager): Database handle.
            artifact_store (ArtifactStore): Store for raw document bytes.
        """
        self.logger = LogManager(__name__)
        self.artifact_store = artifact_store
        self.cases = mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_CASES)
        self.documents = mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_DOCUMENTS)
        self.results = mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_RESULTS)
        self.events = mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_EVENTS)
        self.leases = mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_LEASES)

    # Cases

    def create_case(self, data: Union[CaseDraft, Dict[str, Any]]) -> Case:
        """Open a case in the pending state.

        Args:
            data (Union[CaseDraft, Dict[str, Any]]): Case fields.

        Returns:
            Case: Stored case.

        Raises:
            ValidationException: If required fields are missing or invalid, or
                the case number is already registered.
            DatabaseException: If the case cannot be stored.
        """
        try:
            draft = data if isinstance(data, CaseDraft) else CaseDraft.model_validate(data)
        except ValidationError as err:
            fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in err.errors())
            raise ValidationException(f"Invalid case data ({fields}): {err}") from err

        now = utc_now()
        case = Case(case_id=str(ObjectId()), created_at=now, updated_at=now, **draft.model_dump())

        try:
            self.cases.insert_one(self._case_doc(case))
        except DuplicateKeyError as err:
            raise ValidationException(f"Case number '{case.case_number}' is already registered") from err
        except PyMongoError as err:
            self.logger.error(f"Failed to create case: {err}")
            raise DatabaseException(f"Failed to create case: {err}") from err

        self.append_event(
            CaseCreatedEvent(case_id=case.case_id, case_number=case.case_number, created_by=case.created_by)
        )
        self.logger.info("Case created", case_id=case.case_id, case_number=case.case_number, range=case.range)
        return case

    def get_case(self, case_id: str) -> Case:
        """Get a case.

        Raises:
            ValidationException: If the id is malformed.
            CaseNotFoundException: If the case does not exist.
        """
        case_id = CaseValidator.validate_object_id(case_id)
        try:
            doc = self.cases.find_one({"_id": ObjectId(case_id)})
        except PyMongoError as err:
            raise DatabaseException(f"Failed to read case: {err}") from err

        if doc is None:
            raise CaseNotFoundException(f"Case not found: {case_id}")
        return Case.model_validate(_strip_id(doc))

    def list_cases(
        self,
        state: Optional[CaseState] = None,
        eps: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[Case]:
        query: Dict[str, Any] = {}
        if state is not None:
            query["state"] = CaseState(state).value
        if eps:
            query["eps"] = eps
        try:
            cursor = self.cases.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
            return [Case.model_validate(_strip_id(doc)) for doc in cursor]
        except PyMongoError as err:
            raise DatabaseException(f"Failed to list cases: {err}") from err

    def save_case(self, case: Case) -> Case:
        """Replace the stored case with the given one; refreshes updated_at."""
        case = case.model_copy(update={"updated_at": utc_now()})
        try:
            outcome = self.cases.replace_one({"_id": ObjectId(case.case_id)}, self._case_doc(case))
        except PyMongoError as err:
            self.logger.error(f"Failed to save case: {err}", case_id=case.case_id)
            raise DatabaseException(f"Failed to save case: {err}") from err

        if outcome.matched_count == 0:
            raise CaseNotFoundException(f"Case not found: {case.case_id}")
        return case

    def delete_case(self, case_id: str) -> Dict[str, int]:
        """Delete a case with its documents, results, events and artifacts.

        Raises:
            ConcurrencyError: If a liquidation run holds the case.
        """
        case = self.get_case(case_id)
        if self.lease_holder(case.case_id) is not None:
            raise ConcurrencyError(f"Case {case.case_id} is being liquidated and cannot be deleted")

        artifact_refs = [doc["artifact_ref"] for doc in self.documents.find({"case_id": case.case_id})]
        artifact_refs += [
            doc["report_ref"] for doc in self.results.find({"case_id": case.case_id}) if doc.get("report_ref")
        ]

        try:
            deleted = {
                "documents": self.documents.delete_many({"case_id": case.case_id}).deleted_count,
                "results": self.results.delete_many({"case_id": case.case_id}).deleted_count,
                "events": self.events.delete_many({"case_id": case.case_id}).deleted_count,
            }
            self.leases.delete_one({"_id": case.case_id})
            self.cases.delete_one({"_id": ObjectId(case.case_id)})
        except PyMongoError as err:
            self.logger.error(f"Failed to delete case: {err}", case_id=case.case_id)
            raise DatabaseException(f"Failed to delete case: {err}") from err

        for ref in artifact_refs:
            try:
                self.artifact_store.delete_artifact(ref)
            except StorageException as err:
                self.logger.warning("Artifact could not be deleted", ref=ref, error=err.message)

        self.logger.info("Case deleted", case_id=case.case_id, **deleted)
        return deleted

    # Documents

    def attach_document(
        self,
        case_id: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream"
    ) -> Document:
        """Store a document's bytes and register it on the case.

        Raises:
            ValidationException: If the file is not acceptable.
            StateTransitionError: If the case is closed or being liquidated.
            StorageException: If the bytes cannot be stored.
        """
        case = self.get_case(case_id)
        CaseValidator.validate_upload(filename, len(content))

        if case.state in TERMINAL_STATES:
            raise StateTransitionError(f"Case {case.case_id} is {case.state.value}; documents cannot be attached")
        if self.lease_holder(case.case_id) is not None:
            raise ConcurrencyError(f"Case {case.case_id} is being liquidated; retry when the run ends")

        artifact_ref = self.artifact_store.store_artifact(
            content, artifact_name(f"cases/{case.case_id}/documents", filename), content_type
        )

        try:
            # Sequence is taken from the atomic counter increment.
            updated = self.cases.find_one_and_update(
                {"_id": ObjectId(case.case_id)},
                {"$inc": {"document_count": 1}, "$set": {"updated_at": utc_now().isoformat()}},
                return_document=ReturnDocument.AFTER
            )
            if updated is None:
                raise CaseNotFoundException(f"Case {case.case_id} not found")
            document = Document(
                document_id=str(ObjectId()),
                case_id=case.case_id,
                filename=filename,
                content_type=content_type or "application/octet-stream",
                size=len(content),
                sequence=updated["document_count"] - 1,
                artifact_ref=artifact_ref
            )
            self.documents.insert_one(self._document_doc(document))
        except PyMongoError as err:
            self.logger.error(f"Failed to attach document: {err}", case_id=case.case_id)
            raise DatabaseException(f"Failed to attach document: {err}") from err

        self.append_event(
            DocumentAttachedEvent(
                case_id=case.case_id, document_id=document.document_id, filename=filename, size=document.size
            )
        )
        self.logger.info(
            "Document attached", case_id=case.case_id, document_id=document.document_id, size=document.size
        )
        return document

    def list_documents(self, case_id: str) -> List[Document]:
        """Documents of a case in upload order."""
        try:
            cursor = self.documents.find({"case_id": case_id}).sort(
                [("sequence", ASCENDING), ("uploaded_at", ASCENDING), ("_id", ASCENDING)]
            )
            return [Document.model_validate(_strip_id(doc)) for doc in cursor]
        except PyMongoError as err:
            raise DatabaseException(f"Failed to list documents: {err}") from err

    def fetch_document_content(self, document: Document) -> bytes:
        return self.artifact_store.fetch_artifact(document.artifact_ref)

    def save_documents(self, documents: List[Document]):
        try:
            for document in documents:
                self.documents.replace_one(
                    {"_id": ObjectId(document.document_id)}, self._document_doc(document)
                )
        except PyMongoError as err:
            raise DatabaseException(f"Failed to save documents: {err}") from err

    # Liquidation results

    def save_result(self, result: LiquidationResult) -> LiquidationResult:
        """Store a result as the current one; previous results become history."""
        result = result.model_copy(update={"is_current": True})
        doc = result.model_dump(mode="json")
        doc["_id"] = ObjectId(result.result_id)
        try:
            self.results.insert_one(doc)
            self.results.update_many(
                {"case_id": result.case_id, "is_current": True, "result_id": {"$ne": result.result_id}},
                {"$set": {"is_current": False}}
            )
        except PyMongoError as err:
            self.logger.error(f"Failed to save liquidation result: {err}", case_id=result.case_id)
            raise DatabaseException(f"Failed to save liquidation result: {err}") from err
        return result

    def retire_current_result(self, case_id: str) -> int:
        """Move the current result of a case to history, leaving none current.

        Returns:
            int: Number of results retired.
        """
        try:
            update = self.results.update_many(
                {"case_id": case_id, "is_current": True},
                {"$set": {"is_current": False}}
            )
        except PyMongoError as err:
            self.logger.error(f"Failed to retire liquidation result: {err}", case_id=case_id)
            raise DatabaseException(f"Failed to retire liquidation result: {err}") from err
        if update.modified_count:
            self.logger.info("Current liquidation result retired", case_id=case_id)
        return update.modified_count

    def get_liquidation_result(self, case_id: str) -> Optional[LiquidationResult]:
        case_id = CaseValidator.validate_object_id(case_id)
        try:
            doc = self.results.find_one({"case_id": case_id, "is_current": True})
        except PyMongoError as err:
            raise DatabaseException(f"Failed to read liquidation result: {err}") from err
        return LiquidationResult.model_validate(_strip_id(doc)) if doc else None

    def list_liquidation_results(self, case_id: str) -> List[LiquidationResult]:
        """Every result of a case, newest first."""
        case_id = CaseValidator.validate_object_id(case_id)
        try:
            cursor = self.results.find({"case_id": case_id}).sort("evaluated_at", DESCENDING)
            return [LiquidationResult.model_validate(_strip_id(doc)) for doc in cursor]
        except PyMongoError as err:
            raise DatabaseException(f"Failed to list liquidation results: {err}") from err

    # Events

    def append_event(self, event: CaseEvent):
        try:
            self.events.insert_one(event.model_dump(mode="json"))
        except PyMongoError as err:
            self.logger.error(f"Failed to append case event: {err}", kind=event.kind)
            raise DatabaseException(f"Failed to append case event: {err}") from err

    def list_events(self, case_id: str) -> List[CaseEvent]:
        try:
            cursor = self.events.find({"case_id": case_id}).sort("occurred_at", ASCENDING)
            return [CASE_EVENT_ADAPTER.validate_python(_strip_id(doc)) for doc in cursor]
        except PyMongoError as err:
            raise DatabaseException(f"Failed to list case events: {err}") from err

    # Leases

    def acquire_lease(self, case_id: str, owner: str, ttl_seconds: Optional[int] = None):
        """Take the liquidation lease of a case.

        An expired lease (a crashed run) is taken over.

        Raises:
            ConcurrencyError: If another owner holds a live lease.
        """
        now = time.time()
        expires_at = now + (ttl_seconds or SETTINGS.LIQUIDATION_LEASE_SECONDS)
        lease = {"owner": owner, "acquired_at": now, "expires_at": expires_at}

        try:
            self.leases.insert_one({"_id": case_id, **lease})
            return
        except DuplicateKeyError:
            pass
        except PyMongoError as err:
            raise DatabaseException(f"Failed to acquire lease: {err}") from err

        taken = self.leases.find_one_and_update(
            {"_id": case_id, "expires_at": {"$lt": now}},
            {"$set": lease}
        )
        if taken is None:
            self.logger.warning("Case lease busy", case_id=case_id, owner=owner)
            raise ConcurrencyError(
                f"Case {case_id} already has a liquidation run in progress",
                [f"El caso {case_id} ya tiene una liquidación en curso"]
            )
        self.logger.warning("Expired case lease taken over", case_id=case_id, previous_owner=taken.get("owner"))

    def release_lease(self, case_id: str, owner: str):
        try:
            self.leases.delete_one({"_id": case_id, "owner": owner})
        except PyMongoError as err:
            self.logger.error(f"Failed to release lease: {err}", case_id=case_id, owner=owner)
            raise DatabaseException(f"Failed to release lease: {err}") from err

    def lease_holder(self, case_id: str) -> Optional[str]:
        doc = self.leases.find_one({"_id": case_id, "expires_at": {"$gte": time.time()}})
        return doc["owner"] if doc else None

    @staticmethod
    def _case_doc(case: Case) -> Dict[str, Any]:
        doc = case.model_dump(mode="json")
        doc["_id"] = ObjectId(case.case_id)
        return doc

    @staticmethod
    def _document_doc(document: Document) -> Dict[str, Any]:
        doc = document.model_dump(mode="json")
        doc["_id"] = ObjectId(document.document_id)
        return doc
