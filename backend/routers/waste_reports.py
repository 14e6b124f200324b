"""
Router waste-reports : signalements fermiers et leur cycle de collecte.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request

from config import settings
from core.dependencies import get_current_user, is_staff, require_admin, require_role, require_staff
from core.exceptions import forbidden_exception
from core.rate_limit import limiter
from models.common import UserRole, WasteStatus
from models.waste_report import (
    AssignRiderRequest,
    ProcessPaymentRequest,
    VerifyReportRequest,
    WasteReport,
    WasteReportCreate,
)
from services import waste_report_service

router = APIRouter()


@router.post("", response_model=WasteReport, status_code=201, summary="Signaler des déchets")
async def create_report(
    body: WasteReportCreate,
    current_user: dict = Depends(require_role(UserRole.FARMER)),
):
    report = await waste_report_service.create_report(current_user["user_id"], body)
    return WasteReport(**report)


@router.get("", summary="Signalements (fermier : les siens ; staff : tous)")
async def list_reports(
    status: Optional[WasteStatus] = None,
    farmer_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
):
    if not is_staff(current_user):
        farmer_id = current_user["user_id"]
    return await waste_report_service.list_reports(farmer_id, status, skip, limit)


@router.get("/stats", summary="Agrégats dashboard (staff)")
async def report_stats(_staff=Depends(require_staff)):
    return await waste_report_service.report_stats()


@router.get("/{report_id}", summary="Détail + historique")
async def get_report(report_id: str, current_user: dict = Depends(get_current_user)):
    report = await waste_report_service.get_report(report_id)
    if not is_staff(current_user) and report["farmer_id"] != current_user["user_id"]:
        raise forbidden_exception()
    return {
        "report":   report,
        "timeline": await waste_report_service.report_timeline(report_id),
    }


@router.put("/{report_id}/verify", response_model=WasteReport, summary="Vérifier et planifier (admin)")
async def verify_report(
    report_id: str,
    body: Optional[VerifyReportRequest] = None,
    admin: dict = Depends(require_admin),
):
    report = await waste_report_service.verify_report(
        report_id, admin["user_id"], admin["role"], body.scheduled_pickup_date if body else None,
    )
    return WasteReport(**report)


@router.put("/{report_id}/assign-rider", response_model=WasteReport, summary="Affecter un rider")
async def assign_rider(
    report_id: str,
    body: AssignRiderRequest,
    staff: dict = Depends(require_staff),
):
    report = await waste_report_service.assign_rider(report_id, body.rider_id, staff["user_id"], staff["role"])
    return WasteReport(**report)


@router.put("/{report_id}/collect", response_model=WasteReport, summary="Marquer collecté")
async def mark_collected(report_id: str, staff: dict = Depends(require_staff)):
    report = await waste_report_service.mark_collected(report_id, staff["user_id"], staff["role"])
    return WasteReport(**report)


@router.post("/{report_id}/process-payment", summary="Traiter et payer le fermier (admin)")
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def process_payment(
    request: Request,
    report_id: str,
    body: Optional[ProcessPaymentRequest] = None,
    admin: dict = Depends(require_admin),
):
    return await waste_report_service.process_payment(
        report_id, admin["user_id"], admin["role"], phone=body.phone_number if body else None,
    )


@router.post("/{report_id}/retry-payout", summary="Relancer un payout échoué (admin)")
@limiter.limit(settings.PAYMENT_RATE_LIMIT)
async def retry_payout(
    request: Request,
    report_id: str,
    body: Optional[ProcessPaymentRequest] = None,
    admin: dict = Depends(require_admin),
):
    return await waste_report_service.retry_payout(
        report_id, admin["user_id"], admin["role"], phone=body.phone_number if body else None,
    )
