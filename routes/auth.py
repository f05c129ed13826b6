# routes/auth.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from app.errors import IouError
from app.store.base import IouStore
from deps.services import get_payment_provider, get_store
from schemas import AuthResponse, PiAuthRequest
from security import create_access_token
from services.domain_errors import raise_http_from_domain_error

router = APIRouter(prefix="/v1/auth", tags=["auth"])
logger = logging.getLogger("ioupay.auth")


@router.post("/pi", response_model=AuthResponse)
def pi_login(
    body: PiAuthRequest,
    store: IouStore = Depends(get_store),
    provider=Depends(get_payment_provider),
):
    """
    Exchange a provider access token for an API token.

    The provider verifies the token and tells us who the user is; we only
    keep the uid/username mapping used to resolve IOU counterparties.
    """
    try:
        verified = provider.verify_user(body.access_token.strip())
    except IouError as e:
        raise_http_from_domain_error(e)

    if verified is None:
        raise HTTPException(status_code=401, detail="INVALID_PROVIDER_TOKEN")

    store.upsert_user(verified.uid, verified.username)
    logger.info("provider login uid=%s", verified.uid)
    token = create_access_token(verified.uid, username=verified.username)
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": verified.uid,
        "username": verified.username,
    }
