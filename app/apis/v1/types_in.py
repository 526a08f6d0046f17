"""Input validation models for the liquidation API."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.core.v1.models import CaseDraft, CaseState, RuleDraft


class CaseCreateData(CaseDraft):
    """Validation model for opening a case."""

    model_config = {
        "str_strip_whitespace": True,
        "json_schema_extra": {
            "example": {
                "case_number": "RAD-2024-000123",
                "eps": "EPS Sura",
                "nit": "900123456-7",
                "biller_name": "Clínica Central S.A.S.",
                "contracted_value": "350000.00",
                "invoice_number": "FE-10023",
                "attention_type": "urgencias",
                "created_by": "auditor01"
            }
        }
    }


class RuleCreateData(RuleDraft):
    """Validation model for publishing a rule version."""

    model_config = {
        "json_schema_extra": {
            "example": {
                "rule_id": "TOPE-CONSULTA",
                "label": "Tope de consulta general",
                "glosa_code": "TA0201",
                "ranges": [1, 2],
                "scope": "line",
                "priority": 10,
                "conditions": [{"field": "code", "operator": "eq", "value": "890201"}],
                "deduction": {"kind": "cap", "cap": "45000.00", "per_unit": True}
            }
        }
    }


class CaseListParams(BaseModel):
    """Validation model for case listing parameters."""

    state: Optional[CaseState] = Field(
        default=None,
        description="Filter cases by state"
    )

    eps: Optional[str] = Field(
        default=None,
        max_length=120,
        description="Filter cases by EPS"
    )

    limit: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Maximum number of results"
    )

    skip: int = Field(
        default=0,
        ge=0,
        description="Number of results to skip"
    )

    @field_validator("eps")
    @classmethod
    def validate_eps(cls, v):
        """Empty EPS filter means no filter."""
        if v is not None and v.strip() == "":
            return None
        return v


class RuleSnapshotParams(BaseModel):
    """Validation model for rule snapshot parameters."""

    range: int = Field(
        ge=1,
        le=4,
        description="Case range (1 to 4)"
    )

    eps: Optional[str] = Field(
        default=None,
        max_length=120,
        description="EPS of the case; rules without EPS apply to every payer"
    )
