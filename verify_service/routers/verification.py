import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from verify_service.dependencies.gate import (
    get_app_settings,
    get_current_identity,
    get_request_meta,
    get_verification_service,
    require_admin,
)
from verify_service.errors import AccessDenied, MissingFields, VerificationError
from verify_service.schemas.verification import (
    AuditEntryRead,
    FailureList,
    IssueTokenRequest,
    IssueTokenResponse,
    RedeemRequest,
    RedeemResponse,
    ResendRequest,
    ResendResponse,
    VerificationStats,
    VerificationStatus,
)
from verify_service.services.identity import Identity
from verify_service.services.verification import VerificationService

router = APIRouter(prefix="/verification", tags=["verification"])


def _with_query(url: str, **params) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


@router.post(
    "/tokens",
    response_model=IssueTokenResponse,
    response_model_exclude_none=True,
)
async def issue_verification_token(
    request: Request,
    payload: IssueTokenRequest | None = None,
    identity: Identity = Depends(get_current_identity),
    service: VerificationService = Depends(get_verification_service),
    meta: dict = Depends(get_request_meta),
):
    email = (payload.email if payload else None) or identity.email
    if not email:
        raise MissingFields("An email address is required")
    issued = await service.issue_token(
        identity.id, email, ip=meta.get("ip"), user_agent=meta.get("user_agent")
    )
    response = IssueTokenResponse(expires_at=issued.expires_at)
    if getattr(request.app.state, "expose_tokens", False):
        response.token = issued.token
        response.verify_url = issued.verify_url
    return response


@router.post(
    "/resend",
    response_model=ResendResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resend_verification_email(
    payload: ResendRequest,
    service: VerificationService = Depends(get_verification_service),
    meta: dict = Depends(get_request_meta),
):
    await service.resend_public(
        payload.email, ip=meta.get("ip"), user_agent=meta.get("user_agent")
    )
    return ResendResponse()


@router.get("/redeem", response_class=RedirectResponse)
async def redeem_from_link(
    token: str | None = Query(None, description="the email verification token"),
    service: VerificationService = Depends(get_verification_service),
    meta: dict = Depends(get_request_meta),
    cfg=Depends(get_app_settings),
):
    """Browser entry point for the emailed link. Always answers with a redirect."""
    ip, user_agent = meta.get("ip"), meta.get("user_agent")
    try:
        if not token:
            raise MissingFields()
        await service.throttle_ip("redeem", ip, user_agent)
        await service.redeem_token(token, ip=ip, user_agent=user_agent)
    except VerificationError as exc:
        return RedirectResponse(
            _with_query(cfg.VERIFY_FAILURE_URL, reason=exc.code),
            status_code=status.HTTP_302_FOUND,
        )
    return RedirectResponse(cfg.VERIFY_SUCCESS_URL, status_code=status.HTTP_302_FOUND)


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_from_api(
    payload: RedeemRequest,
    service: VerificationService = Depends(get_verification_service),
    meta: dict = Depends(get_request_meta),
):
    ip, user_agent = meta.get("ip"), meta.get("user_agent")
    await service.throttle_ip("redeem", ip, user_agent)
    redemption = await service.redeem_token(payload.token, ip=ip, user_agent=user_agent)
    return RedeemResponse(
        subject_id=redemption.subject_id, verified_at=redemption.verified_at
    )


@router.get("/status", response_model=VerificationStatus)
async def verification_status(
    identity: Identity = Depends(get_current_identity),
    service: VerificationService = Depends(get_verification_service),
    meta: dict = Depends(get_request_meta),
):
    await service.throttle_ip("status", meta.get("ip"), meta.get("user_agent"))
    return await service.get_status(identity.id)


async def _failures(
    subject_id: uuid.UUID, service: VerificationService, limit: int
) -> FailureList:
    entries = await service.list_failures(subject_id, limit=limit)
    return FailureList(
        subject_id=subject_id,
        count=len(entries),
        errors=[AuditEntryRead.model_validate(e) for e in entries],
    )


@router.get("/errors", response_model=FailureList)
async def own_verification_errors(
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(get_current_identity),
    service: VerificationService = Depends(get_verification_service),
):
    return await _failures(identity.id, service, limit)


@router.get("/errors/{subject_id}", response_model=FailureList)
async def verification_errors_for_subject(
    subject_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(get_current_identity),
    service: VerificationService = Depends(get_verification_service),
):
    if subject_id != identity.id and not identity.is_admin:
        raise AccessDenied()
    return await _failures(subject_id, service, limit)


@router.get("/metrics", response_model=VerificationStats)
async def verification_metrics(
    _: Identity = Depends(require_admin),
    service: VerificationService = Depends(get_verification_service),
):
    return await service.get_stats()
