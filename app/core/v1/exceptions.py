"""Custom Exceptions for application."""

from typing import List, Optional


class BaseException(Exception):
    """Custom Base Exception."""

    def __init__(self, message: str):
        """Instance Custom Base Exception.

        Args:
            message (str): Message detail exception.
        """
        self.message = message
        super().__init__(self.message)


class AppException(BaseException):
    """Expected App Exception."""

    pass


class RuntimeException(BaseException):
    """RuntimeException Exception."""

    pass


class StorageException(BaseException):
    """Storage related exception."""

    pass


class OCRException(BaseException):
    """OCR processing related exception."""

    pass


class DatabaseException(BaseException):
    """Database related exception."""

    pass


class ValidationException(BaseException):
    """Validation related exception.

    Raised before any state transition: missing required case fields,
    malformed identifiers, a case without documents.
    """

    pass


class CaseNotFoundException(BaseException):
    """Exception when a case (radicado) does not exist."""

    pass


class RuleNotFoundException(BaseException):
    """Exception when a rule or rule version does not exist."""

    pass


class ContractLookupTimeout(BaseException):
    """Exception when the contract value service does not answer in time."""

    pass


class ContractLookupException(BaseException):
    """Exception when the contract value service answers with an error."""

    pass


# Liquidation run exceptions

class LiquidationException(BaseException):
    """Base exception for a failed liquidation run.

    Carries the human-readable messages recorded on the case for the run.
    """

    def __init__(self, message: str, messages: Optional[List[str]] = None):
        super().__init__(message)
        self.messages = list(messages or [])


class ExtractionError(LiquidationException):
    """Exception when no document of a case yielded line items."""

    pass


class RuleEvaluationError(LiquidationException):
    """Exception for a malformed rule condition or deduction."""

    def __init__(
        self,
        message: str,
        messages: Optional[List[str]] = None,
        rule_id: Optional[str] = None,
        rule_version: Optional[int] = None
    ):
        super().__init__(message, messages)
        self.rule_id = rule_id
        self.rule_version = rule_version


class ReconciliationError(LiquidationException):
    """Exception when report rows do not reconcile with computed totals.

    The unpersisted result is attached so callers can inspect it.
    """

    def __init__(self, message: str, messages: Optional[List[str]] = None, result=None):
        super().__init__(message, messages)
        self.result = result


class ConcurrencyError(LiquidationException):
    """Exception when a liquidation run is already active for the case."""

    pass


class StateTransitionError(ValidationException):
    """Exception when a case state does not allow the requested operation."""

    pass


class LiquidationCancelledError(LiquidationException):
    """Exception when a run was cancelled and rolled back."""

    pass
