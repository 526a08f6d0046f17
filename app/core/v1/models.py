"""Domain model of the liquidation engine.

Every monetary value is a Decimal quantized to cents. Records are persisted
through ``model_dump(mode="json")`` so Decimals travel as strings and never
lose precision in MongoDB.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field, field_validator

from app.core.v1.amounts import ZERO, quantize_amount
from app.core.v1.range_classifier import classify_range, controlling_value

NIT_PATTERN = re.compile(r"^\d{5,15}(-\d)?$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CaseState(str, Enum):
    """Lifecycle states of a case (radicado)."""

    PENDING = "pending"
    IN_PROCESS = "in_process"
    VALIDATED = "validated"
    LIQUIDATED = "liquidated"
    WITH_GLOSAS = "with_glosas"
    FINALIZED = "finalized"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({CaseState.FINALIZED, CaseState.REJECTED})


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DiagnosticSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class RuleScope(str, Enum):
    """Whether a rule is evaluated per line item or once per case."""

    LINE = "line"
    CASE = "case"


class DeductionKind(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    DISALLOW = "disallow"
    CAP = "cap"


# Cases

class CaseDraft(BaseModel):
    """Fields a caller provides to open a case."""

    model_config = ConfigDict(str_strip_whitespace=True)

    case_number: str = Field(min_length=1, max_length=64, description="Número de radicado")
    eps: str = Field(min_length=1, max_length=120, description="EPS (pagador)")
    nit: str = Field(description="NIT del prestador, dígitos con dígito de verificación opcional")
    biller_name: str = Field(min_length=1, max_length=200, description="Razón social del prestador")
    contracted_value: Optional[Decimal] = Field(default=None, ge=0, description="Valor contratado")
    invoice_number: Optional[str] = Field(default=None, max_length=64)
    attention_type: Optional[str] = Field(default=None, max_length=64)
    created_by: Optional[str] = Field(default=None, max_length=120)

    @field_validator("nit")
    @classmethod
    def validate_nit(cls, value: str) -> str:
        if not NIT_PATTERN.match(value):
            raise ValueError("NIT must contain 5 to 15 digits and an optional '-<dv>' suffix")
        return value

    @field_validator("contracted_value")
    @classmethod
    def quantize_contracted_value(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return None if value is None else quantize_amount(value)


class Case(BaseModel):
    """A submitted medical billing claim.

    ``range`` is derived from the controlling value on every access; values
    supplied for it on construction (for example a stale stored copy) are
    ignored.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    case_id: str
    case_number: str
    eps: str
    nit: str
    biller_name: str
    contracted_value: Optional[Decimal] = None
    total_billed: Decimal = ZERO
    state: CaseState = CaseState.PENDING
    invoice_number: Optional[str] = None
    attention_type: Optional[str] = None
    document_count: int = 0
    validation_count: int = 0
    glosa_count: int = 0
    report_generated: bool = False
    report_ref: Optional[str] = None
    messages: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    created_by: Optional[str] = None

    @computed_field
    @property
    def range(self) -> int:
        return classify_range(controlling_value(self.contracted_value, self.total_billed))


# Documents and line items

class LineItem(BaseModel):
    """A billed service line; the subtotal is always quantity times unit price."""

    model_config = ConfigDict(extra="ignore")

    line_item_id: str
    document_id: str
    code: str
    description: str = ""
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)

    @field_validator("unit_price")
    @classmethod
    def quantize_unit_price(cls, value: Decimal) -> Decimal:
        return quantize_amount(value)

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return quantize_amount(self.quantity * self.unit_price)


class Diagnostic(BaseModel):
    severity: DiagnosticSeverity
    message: str
    document_id: Optional[str] = None


class Document(BaseModel):
    """A supporting document attached to a case."""

    model_config = ConfigDict(extra="ignore")

    document_id: str
    case_id: str
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    sequence: int = Field(default=0, description="Upload order inside the case")
    artifact_ref: str
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING
    line_items: List[LineItem] = Field(default_factory=list)
    diagnostics: List[Diagnostic] = Field(default_factory=list)
    uploaded_at: datetime = Field(default_factory=utc_now)


class ExtractionOutcome(BaseModel):
    document_id: str
    status: ExtractionStatus
    line_items: List[LineItem] = Field(default_factory=list)
    diagnostics: List[Diagnostic] = Field(default_factory=list)


# Rules

class Condition(BaseModel):
    """One clause of a rule predicate. Clauses of a rule are AND-ed.

    Field and operator are kept as plain strings so a stored rule that
    names an unknown one still loads and is reported at evaluation.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    operator: str
    value: Any = None
    value_max: Any = None


class Deduction(BaseModel):
    """Deduction policy of a rule.

    - fixed: ``amount`` per match.
    - percentage: ``percentage`` of the original subtotal.
    - disallow: the whole item (or case total) is contested.
    - cap: the part above ``cap``; ``cap_source='contracted_value'`` uses the
      case contracted value, ``per_unit`` compares unit price instead of
      subtotal.
    """

    model_config = ConfigDict(frozen=True)

    kind: DeductionKind
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None
    cap: Optional[Decimal] = None
    cap_source: Optional[str] = None
    per_unit: bool = False


class Rule(BaseModel):
    """A versioned business rule. Instances are immutable."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    rule_id: str
    version: int = 1
    label: str
    description: str = ""
    glosa_code: Optional[str] = None
    ranges: Tuple[int, ...] = ()
    eps: Optional[str] = None
    scope: RuleScope = RuleScope.LINE
    priority: int = 100
    conditions: Tuple[Condition, ...] = ()
    deduction: Deduction
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    created_by: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[int, str, int]:
        return (self.priority, self.rule_id, self.version)

    def applies_to(self, case_range: int, eps: Optional[str]) -> bool:
        if self.ranges and case_range not in self.ranges:
            return False
        if self.eps and (eps or "").strip().lower() != self.eps.strip().lower():
            return False
        return True


class RuleDraft(BaseModel):
    """Fields a caller provides to publish a rule version."""

    rule_id: str = Field(min_length=1, max_length=80, pattern=r"^[A-Za-z0-9_.\-]+$")
    label: str = Field(min_length=1, max_length=200)
    description: str = ""
    glosa_code: Optional[str] = None
    ranges: Tuple[int, ...] = ()
    eps: Optional[str] = None
    scope: RuleScope = RuleScope.LINE
    priority: int = 100
    conditions: Tuple[Condition, ...] = ()
    deduction: Deduction
    active: bool = True
    created_by: Optional[str] = None

    @field_validator("ranges")
    @classmethod
    def validate_ranges(cls, value: Tuple[int, ...]) -> Tuple[int, ...]:
        if any(item not in (1, 2, 3, 4) for item in value):
            raise ValueError("Ranges must be between 1 and 4")
        return tuple(sorted(set(value)))


# Evaluation output

class Glosa(BaseModel):
    """A contested deduction produced by one rule."""

    case_id: str
    line_item_id: Optional[str] = None
    rule_id: str
    rule_version: int
    glosa_code: Optional[str] = None
    amount: Decimal
    justification: str


class AppliedRule(BaseModel):
    rule_id: str
    rule_version: int
    label: str
    scope: RuleScope
    deduction_kind: DeductionKind
    matches: int = 0
    amount: Decimal = ZERO


class EvaluationOutcome(BaseModel):
    glosas: List[Glosa] = Field(default_factory=list)
    rules_applied: List[AppliedRule] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)
    rules_evaluated: int = 0


class LiquidationResult(BaseModel):
    """Outcome of one liquidation run.

    Historical results are never edited except for the ``is_current`` flag.
    """

    model_config = ConfigDict(extra="ignore")

    result_id: str
    case_id: str
    run_id: str
    case_snapshot: Case
    line_items: List[LineItem] = Field(default_factory=list)
    total_billed: Decimal
    total_glosa: Decimal
    final_payable: Decimal
    rules_applied: List[AppliedRule] = Field(default_factory=list)
    glosas: List[Glosa] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)
    rules_evaluated: int = 0
    report_generated: bool = False
    report_ref: Optional[str] = None
    report_filename: Optional[str] = None
    evaluated_at: datetime = Field(default_factory=utc_now)
    is_current: bool = True


class ReportArtifact(BaseModel):
    filename: str
    content: bytes
    content_type: str = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    row_count: int = 0


# Case events

class CaseCreatedEvent(BaseModel):
    kind: Literal["case_created"] = "case_created"
    case_id: str
    case_number: str
    created_by: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


class DocumentAttachedEvent(BaseModel):
    kind: Literal["document_attached"] = "document_attached"
    case_id: str
    document_id: str
    filename: str
    size: int
    occurred_at: datetime = Field(default_factory=utc_now)


class RuleAppliedEvent(BaseModel):
    kind: Literal["rule_applied"] = "rule_applied"
    case_id: str
    run_id: str
    rule_id: str
    rule_version: int
    matches: int
    amount: Decimal
    occurred_at: datetime = Field(default_factory=utc_now)


class StateChangedEvent(BaseModel):
    kind: Literal["state_changed"] = "state_changed"
    case_id: str
    run_id: Optional[str] = None
    from_state: CaseState
    to_state: CaseState
    reason: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


CaseEvent = Annotated[
    Union[CaseCreatedEvent, DocumentAttachedEvent, RuleAppliedEvent, StateChangedEvent],
    Field(discriminator="kind")
]

CASE_EVENT_ADAPTER = TypeAdapter(CaseEvent)
