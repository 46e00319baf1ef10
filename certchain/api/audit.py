"""Audit chain query, export and verification endpoints."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Response

from certchain.dependencies import get_actor, get_facade, verify_token
from certchain.exceptions import CertChainError
from certchain.models.audit import (
    AuditAction,
    AuditActor,
    AuditCategory,
    AuditLogPage,
    AuditLogQuery,
    AuditLogStatus,
    AuditResult,
    AuditSummary,
    ChainVerification,
)
from certchain.services.facade import IntegrityFacade
from certchain.utils.error_handling import http_exception_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/audit", dependencies=[Depends(verify_token)])


@router.get("/logs", response_model=AuditLogPage)
async def query_audit_logs(
    from_time: datetime | None = Query(default=None, alias="from"),
    to_time: datetime | None = Query(default=None, alias="to"),
    category: AuditCategory | None = None,
    action: AuditAction | None = None,
    result: AuditResult | None = None,
    user_id: str | None = Query(default=None, alias="userId"),
    skip: int = Query(default=0, ge=0),
    take: int = Query(default=100, ge=1, le=1000),
    facade: IntegrityFacade = Depends(get_facade),
) -> AuditLogPage:
    """Filtered audit entries, newest first."""
    query = AuditLogQuery(
        from_time=from_time,
        to_time=to_time,
        category=category,
        action=action,
        result=result,
        user_id=user_id,
        skip=skip,
        take=take,
    )
    return await facade.audit_query(query)


@router.get("/status", response_model=AuditLogStatus)
async def get_audit_status(facade: IntegrityFacade = Depends(get_facade)) -> AuditLogStatus:
    return await facade.audit_status()


@router.get("/summary", response_model=AuditSummary)
async def get_audit_summary(
    days: int = Query(default=7, ge=1, le=365),
    facade: IntegrityFacade = Depends(get_facade),
) -> AuditSummary:
    return await facade.audit_summary(days)


@router.get("/verify", response_model=ChainVerification)
async def verify_audit_chain(
    start: int = Query(default=0, ge=0),
    end: int | None = Query(default=None, ge=0),
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> ChainVerification:
    """
    Recompute every link of the chain.

    A broken chain answers 409 with `broken_at` naming the first entry
    whose link does not match.
    """
    try:
        return await facade.verify_audit_chain(start, end, actor)
    except CertChainError as e:
        logger.error(f"Audit chain verification failed: {e.message}")
        raise http_exception_for(e) from e


@router.get("/export")
async def export_audit_log(
    from_time: datetime | None = Query(default=None, alias="from"),
    to_time: datetime | None = Query(default=None, alias="to"),
    category: AuditCategory | None = None,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> Response:
    """Signed entries with their chain verification, as a JSON download."""
    export = await facade.audit_export(from_time, to_time, category, actor)
    file_name = f"audit_export_{datetime.now(UTC):%Y-%m-%d_%H%M%S}.json"
    return Response(
        content=export.model_dump_json(indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
