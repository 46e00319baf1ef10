"""Integrity certificate endpoints."""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from certchain.dependencies import get_actor, get_facade, verify_token
from certchain.exceptions import CertChainError
from certchain.models.audit import AuditActor
from certchain.models.certificate import CertificateVerification, IntegrityCertificate
from certchain.services.facade import IntegrityFacade
from certchain.utils.error_handling import http_exception_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/integrity", dependencies=[Depends(verify_token)])


class IntegrityCertificateRequest(BaseModel):
    """Request model for issuing an integrity certificate."""

    repositories: list[str] | None = Field(
        default=None,
        description="Repository names to include (default: all configured)",
    )
    operator_name: str = Field(default="System", max_length=128)
    machine_id: str | None = Field(default=None, max_length=128)


@router.post("/certificate", response_model=IntegrityCertificate)
async def issue_certificate(
    request: IntegrityCertificateRequest,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> IntegrityCertificate:
    """
    Issue a signed integrity certificate over the selected repositories.

    A repository that cannot be read appears with status UNKNOWN and its
    error; the certificate is still issued.
    """
    try:
        return await facade.issue_integrity_certificate(
            request.repositories,
            request.operator_name,
            request.machine_id,
            actor,
        )
    except CertChainError as e:
        logger.error(f"Integrity certificate failed: {e.message}")
        raise http_exception_for(e) from e


@router.get("/certificate", response_model=IntegrityCertificate)
async def get_certificate(
    repository: list[str] | None = Query(default=None),
    operator_name: str = Query(default="System", alias="operatorName"),
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> IntegrityCertificate:
    try:
        return await facade.issue_integrity_certificate(repository, operator_name, None, actor)
    except CertChainError as e:
        raise http_exception_for(e) from e


@router.post("/certificate/verify", response_model=CertificateVerification)
async def verify_certificate_bundle(
    bundle: IntegrityCertificate,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> CertificateVerification:
    """Recompute the signature of a previously issued certificate."""
    return await facade.verify_bundle(bundle, actor)


@router.get("/deployment-certificates/{certificate_id}/verify", response_model=CertificateVerification)
async def verify_deployment_certificate(
    certificate_id: str,
    facade: IntegrityFacade = Depends(get_facade),
    actor: AuditActor = Depends(get_actor),
) -> CertificateVerification:
    try:
        return await facade.verify_certificate(certificate_id, actor)
    except CertChainError as e:
        raise http_exception_for(e) from e
