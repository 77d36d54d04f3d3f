from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from assessor.common.deps import CurrentUser, get_current_user, is_staff
from assessor.features.certificates.repository import get_certificate_repository
from assessor.features.certificates.schemas import Certificate

router = APIRouter(prefix="/certificates", tags=["certificates"])


@router.get("/public/{public_id}", response_model=Certificate, summary="Verify a certificate by its public id")
async def get_public_certificate(public_id: str):
    cert = await get_certificate_repository().get_by_public_id(public_id)
    if cert is None or not cert.is_valid:
        raise HTTPException(status_code=404, detail="certificate_not_found")
    return cert


@router.get("/{certificate_id}", response_model=Certificate, summary="Read an issued certificate")
async def get_certificate(certificate_id: str, current_user: CurrentUser = Depends(get_current_user)):
    cert = await get_certificate_repository().get(certificate_id)
    if cert is None:
        raise HTTPException(status_code=404, detail="certificate_not_found")
    if cert.student_id != current_user.id and not is_staff(current_user):
        raise HTTPException(status_code=403, detail="forbidden")
    return cert
