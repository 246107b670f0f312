from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..core.services import PushServices, get_services
from ..core.transport import PushTransportError

router = APIRouter(tags=["status"])


class VapidPublicKeyResponse(BaseModel):
    public_key: str


@router.get("/health")
def health():
    return {"status": "ok", "time": datetime.utcnow().isoformat() + "Z"}


@router.get("/push/vapid-public-key", response_model=VapidPublicKeyResponse)
def vapid_public_key(services: PushServices = Depends(get_services)):
    try:
        creds = services.keyring.current()
    except PushTransportError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="VAPID keys are not configured",
        )
    return VapidPublicKeyResponse(public_key=creds.public_key)
