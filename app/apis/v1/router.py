"""Liquidation API router."""

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, Response, UploadFile

from app.apis.v1.types_in import CaseCreateData, CaseListParams, RuleCreateData, RuleSnapshotParams
from app.apis.v1.types_out import (
    CaseDeleteResponse,
    CaseListResponse,
    CaseResponse,
    DocumentResponse,
    LiquidationAcceptedResponse,
    LiquidationHistoryResponse,
    LiquidationResultResponse,
    RuleSnapshotResponse,
    RuleVersionsResponse,
)
from app.core.v1.engine_context import EngineContext
from app.core.v1.log_manager import LogManager
from app.core.v1.models import CaseEvent, CaseState, Rule
from app.core.v1.validators import CaseValidator

# Initialize router
router = APIRouter()

logger = LogManager(__name__)


def get_engine(request: Request) -> EngineContext:
    """Engine context built at startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=503,
            detail={
                "error_code": "ENGINE_UNAVAILABLE",
                "message": "Liquidation engine is not initialized"
            }
        )
    return engine


def get_case_list_params(
    state: Optional[CaseState] = Query(None, description="Filter cases by state"),
    eps: Optional[str] = Query(None, max_length=120, description="Filter cases by EPS"),
    limit: int = Query(20, ge=1, le=100, description="Maximum number of results"),
    skip: int = Query(0, ge=0, description="Number of results to skip")
) -> CaseListParams:
    return CaseListParams(state=state, eps=eps, limit=limit, skip=skip)


def get_snapshot_params(
    range: int = Query(..., ge=1, le=4, description="Case range (1 to 4)"),
    eps: Optional[str] = Query(None, max_length=120, description="EPS of the case")
) -> RuleSnapshotParams:
    return RuleSnapshotParams(range=range, eps=eps)


# Cases

@router.post("/cases", response_model=CaseResponse, status_code=201, tags=["cases"])
async def create_case(data: CaseCreateData, engine: EngineContext = Depends(get_engine)):
    """
    Open a case (radicado) in the pending state.

    Args:
        data: Case fields

    Returns:
        CaseResponse: Stored case with its derived range
    """
    case = engine.repository.create_case(data)
    return case


@router.get("/cases", response_model=CaseListResponse, tags=["cases"])
async def list_cases(
    params: CaseListParams = Depends(get_case_list_params),
    engine: EngineContext = Depends(get_engine)
):
    """List cases, newest first."""
    cases = engine.repository.list_cases(
        state=params.state,
        eps=params.eps,
        skip=params.skip,
        limit=params.limit + 1
    )
    has_next = len(cases) > params.limit
    cases = cases[:params.limit]

    logger.info("Cases listed", returned=len(cases), state=params.state, eps=params.eps)
    return CaseListResponse(
        cases=cases,
        limit=params.limit,
        skip=params.skip,
        returned_count=len(cases),
        has_next=has_next
    )


@router.get("/cases/{case_id}", response_model=CaseResponse, tags=["cases"])
async def get_case(case_id: str, engine: EngineContext = Depends(get_engine)):
    case = engine.repository.get_case(case_id)
    return case


@router.delete("/cases/{case_id}", response_model=CaseDeleteResponse, tags=["cases"])
async def delete_case(case_id: str, engine: EngineContext = Depends(get_engine)):
    """
    Delete a case with its documents, results, events and stored artifacts.

    A case being liquidated cannot be deleted (409).
    """
    deleted = engine.repository.delete_case(case_id)
    return CaseDeleteResponse(
        case_id=case_id,
        deleted=deleted,
        message="Case deleted successfully"
    )


@router.get("/cases/{case_id}/events", response_model=List[CaseEvent], tags=["cases"])
async def list_case_events(case_id: str, engine: EngineContext = Depends(get_engine)):
    """Audit trail of a case in chronological order."""
    case = engine.repository.get_case(case_id)
    return engine.repository.list_events(case.case_id)


# Documents

@router.post(
    "/cases/{case_id}/documents",
    response_model=DocumentResponse,
    status_code=201,
    tags=["documents"]
)
async def upload_document(
    case_id: str,
    file: UploadFile = File(..., description="Supporting document (pdf, txt or csv)"),
    engine: EngineContext = Depends(get_engine)
):
    """
    Attach a supporting document to a case.

    The bytes go to the artifact store; line items are extracted when the
    case is liquidated.

    Args:
        case_id: Case ID
        file: Document file to upload

    Returns:
        DocumentResponse: Registered document
    """
    case_id = CaseValidator.validate_object_id(case_id)
    logger.info(
        "Starting document upload",
        case_id=case_id,
        filename=file.filename,
        content_type=file.content_type
    )

    content = await file.read()
    document = engine.repository.attach_document(
        case_id,
        file.filename or "",
        content,
        file.content_type or "application/octet-stream"
    )
    return DocumentResponse(**document.model_dump())


@router.get("/cases/{case_id}/documents", response_model=List[DocumentResponse], tags=["documents"])
async def list_documents(case_id: str, engine: EngineContext = Depends(get_engine)):
    case = engine.repository.get_case(case_id)
    return [DocumentResponse(**document.model_dump()) for document in engine.repository.list_documents(case.case_id)]


# Liquidation

@router.post(
    "/cases/{case_id}/liquidation",
    response_model=LiquidationAcceptedResponse,
    status_code=202,
    tags=["liquidation"]
)
async def start_liquidation(
    case_id: str,
    response: Response,
    wait: bool = Query(False, description="Wait for the run to finish before answering"),
    engine: EngineContext = Depends(get_engine)
):
    """
    Start a liquidation run for a case.

    Busy cases answer 409 and cases that cannot be liquidated answer 400
    before anything is queued. With ``wait=true`` the run finishes before the
    response and its errors are returned directly.

    Returns:
        LiquidationAcceptedResponse: Run identifiers
    """
    run = engine.orchestrator.submit(case_id)

    if not wait:
        return LiquidationAcceptedResponse(
            case_id=run.case_id,
            run_id=run.run_id,
            message="Liquidation queued"
        )

    result = await asyncio.wrap_future(run.future)
    response.status_code = 200
    logger.info("Liquidation finished", case_id=run.case_id, run_id=run.run_id)
    return LiquidationAcceptedResponse(
        case_id=run.case_id,
        run_id=run.run_id,
        status=result.case_snapshot.state.value,
        message="Liquidation completed"
    )


@router.post("/cases/{case_id}/liquidation/cancel", tags=["liquidation"])
async def cancel_liquidation(case_id: str, engine: EngineContext = Depends(get_engine)):
    """Request cancellation of the run in progress for a case."""
    case_id = CaseValidator.validate_object_id(case_id)
    cancelled = engine.orchestrator.cancel(case_id)
    if not cancelled:
        raise HTTPException(
            status_code=404,
            detail={
                "error_code": "RUN_NOT_FOUND",
                "message": f"No liquidation run in progress for case {case_id}"
            }
        )
    return {"case_id": case_id, "cancelled": True}


@router.get("/cases/{case_id}/liquidation", response_model=LiquidationResultResponse, tags=["liquidation"])
async def get_liquidation(case_id: str, engine: EngineContext = Depends(get_engine)):
    """Current liquidation result of a case."""
    result = engine.orchestrator.get_liquidation_result(case_id)
    if result is None:
        raise HTTPException(
            status_code=404,
            detail={
                "error_code": "RESULT_NOT_FOUND",
                "message": f"Case {case_id} has not been liquidated"
            }
        )
    return LiquidationResultResponse.from_result(result)


@router.get(
    "/cases/{case_id}/liquidation/history",
    response_model=LiquidationHistoryResponse,
    tags=["liquidation"]
)
async def get_liquidation_history(case_id: str, engine: EngineContext = Depends(get_engine)):
    results = engine.orchestrator.list_liquidation_history(case_id)
    return LiquidationHistoryResponse(
        case_id=case_id,
        results=[LiquidationResultResponse.from_result(result) for result in results],
        total_found=len(results)
    )


@router.get("/cases/{case_id}/liquidation/report", tags=["liquidation"])
async def download_report(case_id: str, engine: EngineContext = Depends(get_engine)):
    """Download the xlsx report of the current liquidation result."""
    result = engine.orchestrator.get_liquidation_result(case_id)
    if result is None or not result.report_generated:
        raise HTTPException(
            status_code=404,
            detail={
                "error_code": "REPORT_NOT_FOUND",
                "message": f"Case {case_id} has no liquidation report"
            }
        )

    filename, content = engine.orchestrator.fetch_report(case_id)
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.post("/cases/{case_id}/finalize", response_model=CaseResponse, tags=["liquidation"])
async def finalize_case(case_id: str, engine: EngineContext = Depends(get_engine)):
    """Close a liquidated case; no further runs are accepted."""
    case = engine.orchestrator.finalize(case_id)
    return case


# Rules

@router.post("/rules", response_model=Rule, status_code=201, tags=["rules"])
async def publish_rule(data: RuleCreateData, engine: EngineContext = Depends(get_engine)):
    """Publish a new version of a rule. Earlier versions are kept."""
    return engine.rule_store.publish_rule(data)


@router.get("/rules/snapshot", response_model=RuleSnapshotResponse, tags=["rules"])
async def get_rule_snapshot(
    params: RuleSnapshotParams = Depends(get_snapshot_params),
    engine: EngineContext = Depends(get_engine)
):
    """Active rules that a case of the given range and EPS would be evaluated with."""
    rules = engine.rule_store.snapshot(params.range, params.eps)
    return RuleSnapshotResponse(
        range=params.range,
        eps=params.eps,
        rules=list(rules),
        total_found=len(rules)
    )


@router.get("/rules/{rule_id}/versions", response_model=RuleVersionsResponse, tags=["rules"])
async def list_rule_versions(rule_id: str, engine: EngineContext = Depends(get_engine)):
    versions = engine.rule_store.list_versions(rule_id)
    if not versions:
        raise HTTPException(
            status_code=404,
            detail={
                "error_code": "RULE_NOT_FOUND",
                "message": f"Rule not found: {rule_id}"
            }
        )
    return RuleVersionsResponse(rule_id=rule_id, versions=versions)


@router.delete("/rules/{rule_id}", response_model=Rule, tags=["rules"])
async def deactivate_rule(rule_id: str, engine: EngineContext = Depends(get_engine)):
    """Publish an inactive version of a rule."""
    return engine.rule_store.deactivate_rule(rule_id)
