"""Staff endpoints for the moderation lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse

from modconsole.moderation.api import schemas
from modconsole.moderation.api._errors import to_http_error
from modconsole.moderation.domain.configuration import ConfigurationActor
from modconsole.moderation.domain.container import ModerationRuntime
from modconsole.moderation.domain.errors import ForbiddenError, ModerationError, PartialBatchError, StepFailedError
from modconsole.moderation.domain.orchestrator import ModerationOrchestrator, SanctionOutcome

router = APIRouter(prefix="/admin", tags=["moderation-admin"])


@dataclass(frozen=True)
class AdminActor:
    id: str
    email: Optional[str] = None


def get_runtime(request: Request) -> ModerationRuntime:
    return request.app.state.moderation


def get_orchestrator(runtime: ModerationRuntime = Depends(get_runtime)) -> ModerationOrchestrator:
    return runtime.orchestrator


async def require_admin(
    x_admin_id: str = Header(..., alias="X-Admin-Id"),
    x_admin_email: Optional[str] = Header(default=None, alias="X-Admin-Email"),
    runtime: ModerationRuntime = Depends(get_runtime),
) -> AdminActor:
    """Capability check against the staff directory."""
    if not await runtime.staff.is_admin(x_admin_id):
        raise to_http_error(ForbiddenError("admin_required"))
    return AdminActor(id=x_admin_id, email=x_admin_email)


def _sanction_response(outcome: SanctionOutcome, *, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    body = schemas.SanctionOut.from_domain(outcome)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _partial_response(exc: PartialBatchError | StepFailedError) -> JSONResponse:
    # the sanction itself stands; 207 tells the caller not to re-apply it
    return _sanction_response(exc.outcome, status_code=status.HTTP_207_MULTI_STATUS)


# configuration


@router.get("/configuration", response_model=schemas.ConfigurationOut)
async def get_configuration(
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    _: AdminActor = Depends(require_admin),
) -> schemas.ConfigurationOut:
    try:
        return schemas.ConfigurationOut.from_domain(await orchestrator.get_configuration())
    except ModerationError as exc:
        raise to_http_error(exc) from exc


@router.patch("/configuration", response_model=schemas.ConfigurationOut)
async def update_configuration(
    payload: schemas.ConfigurationPatch,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.ConfigurationOut:
    try:
        config = await orchestrator.update_configuration(
            payload.changes(),
            ConfigurationActor(admin_id=admin.id, email=admin.email),
        )
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.ConfigurationOut.from_domain(config)


@router.get("/configuration/logs", response_model=list[schemas.ConfigurationLogOut])
async def list_configuration_logs(
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    _: AdminActor = Depends(require_admin),
) -> list[schemas.ConfigurationLogOut]:
    try:
        logs = await orchestrator.list_configuration_logs(limit=limit)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return [schemas.ConfigurationLogOut.from_domain(entry) for entry in logs]


# announcements


@router.post("/announcements/{announcement_id}/approve", response_model=schemas.AnnouncementOut)
async def approve_announcement(
    announcement_id: str,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.AnnouncementOut:
    try:
        announcement = await orchestrator.approve_announcement(announcement_id, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.AnnouncementOut.from_domain(announcement)


@router.post("/announcements/{announcement_id}/decline", response_model=schemas.AnnouncementOut)
async def decline_announcement(
    announcement_id: str,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.AnnouncementOut:
    try:
        announcement = await orchestrator.decline_announcement(announcement_id, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.AnnouncementOut.from_domain(announcement)


@router.post("/announcements/{announcement_id}/remove", response_model=schemas.AnnouncementOut)
async def remove_announcement(
    announcement_id: str,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.AnnouncementOut:
    try:
        announcement = await orchestrator.remove_announcement(announcement_id, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.AnnouncementOut.from_domain(announcement)


@router.post("/announcements/evaluate", response_model=schemas.EvaluationOut)
async def evaluate_announcements(
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    _: AdminActor = Depends(require_admin),
) -> schemas.EvaluationOut:
    return schemas.EvaluationOut.from_domain(await orchestrator.force_evaluate_announcements())


# reports and posts


@router.get("/reports/statistics", response_model=schemas.ReportStatisticsOut)
async def report_statistics(
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    _: AdminActor = Depends(require_admin),
) -> schemas.ReportStatisticsOut:
    try:
        stats = await orchestrator.report_statistics()
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.ReportStatisticsOut.from_domain(stats)


@router.patch("/reports/{report_id}", response_model=schemas.ReportOut)
async def update_report_status(
    report_id: str,
    payload: schemas.ReportStatusIn,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.ReportOut:
    try:
        report = await orchestrator.update_report_status(report_id, payload.status, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.ReportOut.from_domain(report)


@router.post("/posts/{post_id}/remove", response_model=schemas.PostOut)
async def remove_post(
    post_id: str,
    payload: schemas.RemovePostIn,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.PostOut:
    try:
        post = await orchestrator.remove_post(post_id, reason=payload.reason, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.PostOut.from_domain(post)


@router.get("/posts/{post_id}/moderation", response_model=schemas.PostModerationOut)
async def post_moderation(
    post_id: str,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    _: AdminActor = Depends(require_admin),
) -> schemas.PostModerationOut:
    try:
        info = await orchestrator.reports.post_moderation(post_id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.PostModerationOut.from_domain(info)


@router.get("/urgent", response_model=schemas.UrgentOut)
async def list_urgent_items(
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    _: AdminActor = Depends(require_admin),
) -> schemas.UrgentOut:
    try:
        items = await orchestrator.list_urgent_items()
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.UrgentOut.from_domain(items)


# user sanctions


@router.post("/users/{user_id}/warn", response_model=schemas.SanctionOut)
async def warn_user(
    user_id: str,
    payload: schemas.WarnUserIn,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
):
    try:
        outcome = await orchestrator.warn_user(
            user_id,
            admin_id=admin.id,
            post_id=payload.post_id,
            message=payload.message,
        )
    except PartialBatchError as exc:
        return _partial_response(exc)
    except StepFailedError as exc:
        if exc.outcome is None:
            raise to_http_error(exc) from exc
        return _partial_response(exc)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return _sanction_response(outcome)


@router.post("/users/{user_id}/suspend", response_model=schemas.SanctionOut)
async def suspend_user(
    user_id: str,
    payload: schemas.SuspendUserIn,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
):
    try:
        outcome = await orchestrator.suspend_user(
            user_id,
            reason=payload.reason,
            duration_days=payload.duration_days,
            admin_id=admin.id,
        )
    except PartialBatchError as exc:
        return _partial_response(exc)
    except StepFailedError as exc:
        if exc.outcome is None:
            raise to_http_error(exc) from exc
        return _partial_response(exc)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return _sanction_response(outcome)


@router.post("/users/{user_id}/ban", response_model=schemas.SanctionOut)
async def ban_user(
    user_id: str,
    payload: schemas.BanUserIn,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
):
    try:
        outcome = await orchestrator.ban_user(
            user_id,
            reason=payload.reason,
            duration_days=payload.duration_days,
            admin_id=admin.id,
        )
    except PartialBatchError as exc:
        return _partial_response(exc)
    except StepFailedError as exc:
        if exc.outcome is None:
            raise to_http_error(exc) from exc
        return _partial_response(exc)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return _sanction_response(outcome)


@router.post("/users/{user_id}/reinstate", response_model=schemas.UserOut)
async def reinstate_user(
    user_id: str,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.UserOut:
    try:
        user = await orchestrator.reinstate_user(user_id, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.UserOut.from_domain(user)


@router.post("/users/{user_id}/reset-warnings", response_model=schemas.UserOut)
async def reset_user_warnings(
    user_id: str,
    orchestrator: ModerationOrchestrator = Depends(get_orchestrator),
    admin: AdminActor = Depends(require_admin),
) -> schemas.UserOut:
    try:
        user = await orchestrator.reset_warnings(user_id, admin_id=admin.id)
    except ModerationError as exc:
        raise to_http_error(exc) from exc
    return schemas.UserOut.from_domain(user)


__all__ = ["router"]
