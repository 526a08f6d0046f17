"""Rule store: append-only versioned billing rules in MongoDB."""

from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.v1.exceptions import (
    DatabaseException,
    RuleEvaluationError,
    RuleNotFoundException,
    ValidationException,
)
from app.core.v1.log_manager import LogManager
from app.core.v1.models import Rule, RuleDraft, utc_now
from app.core.v1.mongodb_manager import MongoDBManager
from app.core.v1.rule_conditions import ConditionError
from app.core.v1.rule_evaluator import check_rule
from app.settings.v1.general import SETTINGS

PUBLISH_ATTEMPTS = 3


class RuleStore:
    """
    Holds every version of every rule.

    Publishing never edits a stored document: a rule_id that already exists
    gets a new version, so results keep pointing at the exact version that
    produced them.
    """

    def __init__(self, mongodb_manager: MongoDBManager):
        self.logger = LogManager(__name__)
        self.collection = mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_RULES)

    def publish_rule(self, draft: Union[RuleDraft, Dict[str, Any]]) -> Rule:
        """Publish a new version of a rule.

        Args:
            draft (Union[RuleDraft, Dict[str, Any]]): Rule definition.

        Returns:
            Rule: Stored rule with its assigned version.

        Raises:
            ValidationException: If the definition is malformed.
            DatabaseException: If the rule cannot be stored.
        """
        try:
            if not isinstance(draft, RuleDraft):
                draft = RuleDraft.model_validate(draft)
        except ValidationError as err:
            raise ValidationException(f"Invalid rule definition: {err}") from err

        for _ in range(PUBLISH_ATTEMPTS):
            version = self._latest_version(draft.rule_id) + 1
            rule = Rule(**draft.model_dump(), version=version, created_at=utc_now())
            try:
                check_rule(rule)
            except ConditionError as err:
                raise ValidationException(f"Invalid rule '{draft.rule_id}': {err}") from err

            try:
                self.collection.insert_one(rule.model_dump(mode="json"))
            except DuplicateKeyError:
                self.logger.warning("Concurrent rule publication, retrying", rule_id=rule.rule_id, version=version)
                continue
            except PyMongoError as err:
                self.logger.error(f"Failed to publish rule: {err}", rule_id=rule.rule_id)
                raise DatabaseException(f"Failed to publish rule: {err}") from err

            self.logger.info("Rule published", rule_id=rule.rule_id, version=version, active=rule.active)
            return rule

        raise DatabaseException(f"Could not assign a version to rule '{draft.rule_id}'")

    def deactivate_rule(self, rule_id: str, created_by: Optional[str] = None) -> Rule:
        """Publish an inactive version of a rule."""
        current = self.get_rule(rule_id)
        draft = RuleDraft(**current.model_dump(include=set(RuleDraft.model_fields)))
        draft = draft.model_copy(update={"active": False, "created_by": created_by})
        return self.publish_rule(draft)

    def get_rule(self, rule_id: str, version: Optional[int] = None) -> Rule:
        """Get one version of a rule, the latest when no version is given.

        Raises:
            RuleNotFoundException: If the rule or version does not exist.
        """
        query: Dict[str, Any] = {"rule_id": rule_id}
        if version is not None:
            query["version"] = version
        try:
            doc = self.collection.find_one(query, sort=[("version", DESCENDING)])
        except PyMongoError as err:
            raise DatabaseException(f"Failed to read rule: {err}") from err

        if doc is None:
            label = rule_id if version is None else f"{rule_id} v{version}"
            raise RuleNotFoundException(f"Rule not found: {label}")
        return self._to_rule(doc)

    def list_versions(self, rule_id: str) -> List[Rule]:
        try:
            docs = list(self.collection.find({"rule_id": rule_id}).sort("version", ASCENDING))
        except PyMongoError as err:
            raise DatabaseException(f"Failed to list rule versions: {err}") from err
        return [self._to_rule(doc) for doc in docs]

    def snapshot(self, case_range: int, eps: Optional[str] = None) -> Tuple[Rule, ...]:
        """Capture the rules that apply to a range and payer.

        Only the latest version of each rule counts; a rule whose latest
        version is inactive is left out even if an older version was
        active.

        Args:
            case_range (int): Range of the case.
            eps (Optional[str]): Payer of the case.

        Returns:
            Tuple[Rule, ...]: Immutable snapshot ordered by priority, rule id.
        """
        try:
            docs = list(self.collection.find({}).sort([("rule_id", ASCENDING), ("version", ASCENDING)]))
        except PyMongoError as err:
            self.logger.error(f"Failed to read rule snapshot: {err}")
            raise DatabaseException(f"Failed to read rule snapshot: {err}") from err

        latest_docs: Dict[str, Dict[str, Any]] = {}
        for doc in docs:
            latest_docs[doc["rule_id"]] = doc

        latest: List[Rule] = []
        for doc in latest_docs.values():
            try:
                rule = self._to_rule(doc)
            except ValidationError as err:
                message = f"La regla {doc.get('rule_id')} v{doc.get('version')} almacenada es inválida: {err}"
                self.logger.error("Stored rule cannot be loaded", rule_id=doc.get("rule_id"), error=str(err))
                raise RuleEvaluationError(
                    message, [message], rule_id=doc.get("rule_id"), rule_version=doc.get("version")
                ) from err
            latest.append(rule)

        rules = [
            rule for rule in latest
            if rule.active and rule.applies_to(case_range, eps)
        ]
        snapshot = tuple(sorted(rules, key=lambda rule: rule.sort_key))
        self.logger.info("Rule snapshot captured", range=case_range, eps=eps, rules=len(snapshot))
        return snapshot

    def _latest_version(self, rule_id: str) -> int:
        doc = self.collection.find_one({"rule_id": rule_id}, sort=[("version", DESCENDING)])
        return int(doc["version"]) if doc else 0

    @staticmethod
    def _to_rule(doc: Dict[str, Any]) -> Rule:
        doc = dict(doc)
        doc.pop("_id", None)
        return Rule.model_validate(doc)
