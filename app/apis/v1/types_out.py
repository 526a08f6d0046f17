"""Output types for the liquidation API."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.v1.models import (
    AppliedRule,
    Case,
    CaseState,
    Diagnostic,
    ExtractionStatus,
    Glosa,
    LineItem,
    LiquidationResult,
    Rule,
)


class CaseResponse(Case):
    """Response schema for a case."""


class CaseListResponse(BaseModel):
    """Response schema for case listing with pagination metadata."""

    cases: List[Case] = Field(
        description="List of matching cases"
    )

    limit: int = Field(
        description="Maximum number of results requested"
    )

    skip: int = Field(
        description="Number of results skipped"
    )

    returned_count: int = Field(
        description="Actual number of cases returned in this response"
    )

    has_next: bool = Field(
        description="Whether there may be more results available"
    )


class CaseDeleteResponse(BaseModel):
    """Response schema for case deletion."""

    case_id: str = Field(
        description="ID of the deleted case"
    )

    deleted: Dict[str, int] = Field(
        description="Number of deleted records per collection"
    )

    message: str = Field(
        description="Deletion status message"
    )


class DocumentResponse(BaseModel):
    """Response schema for an attached document."""

    document_id: str = Field(
        description="Unique document ID"
    )

    case_id: str = Field(
        description="Case the document belongs to"
    )

    filename: str = Field(
        description="Original filename"
    )

    content_type: str = Field(
        description="MIME type of the document"
    )

    size: int = Field(
        description="File size in bytes"
    )

    sequence: int = Field(
        description="Upload order inside the case"
    )

    extraction_status: ExtractionStatus = Field(
        description="Extraction status of the last liquidation run"
    )

    diagnostics: List[Diagnostic] = Field(
        default=[],
        description="Extraction diagnostics of the last liquidation run"
    )

    uploaded_at: datetime = Field(
        description="Upload timestamp"
    )


class LiquidationAcceptedResponse(BaseModel):
    """Response schema for a queued liquidation run."""

    case_id: str = Field(
        description="Case being liquidated"
    )

    run_id: str = Field(
        description="Unique ID of the run"
    )

    status: str = Field(
        default="accepted",
        description="Run status"
    )

    message: str = Field(
        description="Status message"
    )


class LiquidationResultResponse(BaseModel):
    """Response schema for a liquidation result."""

    result_id: str
    case_id: str
    run_id: str
    state: CaseState = Field(
        description="Case state produced by the run"
    )
    range: int = Field(
        description="Case range at evaluation time"
    )
    total_billed: Decimal
    total_glosa: Decimal
    final_payable: Decimal
    line_items: List[LineItem] = Field(default=[])
    glosas: List[Glosa] = Field(default=[])
    rules_applied: List[AppliedRule] = Field(default=[])
    rules_evaluated: int = 0
    messages: List[str] = Field(default=[])
    report_generated: bool = False
    report_filename: Optional[str] = None
    evaluated_at: datetime
    is_current: bool

    @classmethod
    def from_result(cls, result: LiquidationResult) -> "LiquidationResultResponse":
        return cls(
            result_id=result.result_id,
            case_id=result.case_id,
            run_id=result.run_id,
            state=result.case_snapshot.state,
            range=result.case_snapshot.range,
            total_billed=result.total_billed,
            total_glosa=result.total_glosa,
            final_payable=result.final_payable,
            line_items=result.line_items,
            glosas=result.glosas,
            rules_applied=result.rules_applied,
            rules_evaluated=result.rules_evaluated,
            messages=result.messages,
            report_generated=result.report_generated,
            report_filename=result.report_filename,
            evaluated_at=result.evaluated_at,
            is_current=result.is_current
        )


class LiquidationHistoryResponse(BaseModel):
    """Response schema for the result history of a case, newest first."""

    case_id: str
    results: List[LiquidationResultResponse] = Field(default=[])
    total_found: int


class RuleSnapshotResponse(BaseModel):
    """Response schema for the rules applicable to a range and EPS."""

    range: int
    eps: Optional[str] = None
    rules: List[Rule] = Field(default=[])
    total_found: int


class RuleVersionsResponse(BaseModel):
    """Response schema for every version of a rule."""

    rule_id: str
    versions: List[Rule] = Field(default=[])


class HealthResponse(BaseModel):
    """Response schema for the health check."""

    status: str
    timestamp: float
    version: str
    environment: str
    database: str
