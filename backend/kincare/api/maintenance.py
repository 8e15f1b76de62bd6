"""Maintenance endpoints for the expiry sweep and index repair (API key protected)."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from kincare.api.deps import Manager, get_maintenance_service, require_api_key
from kincare.api.family_access import index_report_response
from kincare.schemas import (
    ConsistencyIssueResponse,
    ConsistencyReportResponse,
    IndexReportResponse,
    RepairResponse,
    SweepResponse,
)
from kincare.services.family_access import MaintenanceService

router = APIRouter(
    prefix="/family-access/maintenance",
    tags=["Family Access Maintenance"],
    dependencies=[Depends(require_api_key)],
)

Maintenance = Annotated[MaintenanceService, Depends(get_maintenance_service)]


@router.post("/expire", response_model=SweepResponse)
async def run_expiry_sweep(manager: Manager):
    result = await manager.expire_stale()
    return SweepResponse(
        expired_invitations=result.expired_invitations,
        expired_emergency_grants=result.expired_emergency_grants,
        total=result.total,
    )


@router.post("/identities/{identity_id}/rebuild-index", response_model=IndexReportResponse)
async def rebuild_index(identity_id: int, maintenance: Maintenance):
    return index_report_response(await maintenance.rebuild_index(identity_id))


@router.post("/identities/{identity_id}/repair", response_model=RepairResponse)
async def repair_identity(identity_id: int, maintenance: Maintenance):
    result = await maintenance.repair(identity_id)
    return RepairResponse(
        identity_id=result.identity_id,
        relinked_access_ids=result.relinked_access_ids,
        reports=[index_report_response(report) for report in result.reports],
    )


@router.get("/consistency", response_model=ConsistencyReportResponse)
async def audit_consistency(
    maintenance: Maintenance,
    identity_id: int | None = Query(None),
):
    report = await maintenance.audit_consistency(identity_id)
    return ConsistencyReportResponse(
        consistent=report.consistent,
        checked_identities=report.checked_identities,
        checked_records=report.checked_records,
        issues=[
            ConsistencyIssueResponse(
                kind=issue.kind,
                identity_id=issue.identity_id,
                access_id=issue.access_id,
                details=issue.details,
            )
            for issue in report.issues
        ],
    )
