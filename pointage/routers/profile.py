from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from pointage.db import get_db
from pointage.routers.common import provisioned_principal, request_meta
from pointage.schemas import ProfileRead, ProfileStatusResponse, ProfileSubmitRequest
from pointage.security import Principal
from pointage.services.approvals import get_profile_status, resubmit_profile, submit_profile

router = APIRouter(prefix="/api/profile", tags=["profile"])


@router.post("/submit", response_model=ProfileRead, status_code=201)
def submit_profile_endpoint(
    payload: ProfileSubmitRequest,
    request: Request,
    principal: Principal = Depends(provisioned_principal),
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = submit_profile(
        db,
        account_id=principal.user_id,
        data=payload.model_dump(),
        **request_meta(request),
    )
    return ProfileRead.model_validate(profile)


@router.post("/resubmit", response_model=ProfileRead)
def resubmit_profile_endpoint(
    payload: ProfileSubmitRequest,
    request: Request,
    principal: Principal = Depends(provisioned_principal),
    db: Session = Depends(get_db),
) -> ProfileRead:
    profile = resubmit_profile(
        db,
        account_id=principal.user_id,
        data=payload.model_dump(),
        **request_meta(request),
    )
    return ProfileRead.model_validate(profile)


@router.get("/status", response_model=ProfileStatusResponse)
def profile_status_endpoint(
    principal: Principal = Depends(provisioned_principal),
    db: Session = Depends(get_db),
) -> ProfileStatusResponse:
    account, profile = get_profile_status(db, account_id=principal.user_id)
    return ProfileStatusResponse(
        account_status=account.status,
        profile=ProfileRead.model_validate(profile) if profile is not None else None,
    )
