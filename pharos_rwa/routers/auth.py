from fastapi import APIRouter, Depends, status
import logging

from ..auth.auth_service import AuthService
from ..dependencies import get_auth_service, get_current_session
from ..models.auth_models import ChallengeRequest, ChallengeResponse, SessionClaims, VerifyRequest, VerifyResponse
from ..models.data_models import ErrorResponse

router = APIRouter(
    prefix="/auth",
    tags=["Authentication (wallet signature)"],
)

logger = logging.getLogger(__name__)


# --- API Endpoints ---
@router.post(
    "/challenge",
    response_model=ChallengeResponse,
    responses={status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}},
)
def create_challenge(challenge_request: ChallengeRequest, auth: AuthService = Depends(get_auth_service)):
    """
    Issues a one-time challenge for the wallet to sign.

    Requesting a new challenge invalidates any earlier, unused one for the
    same address.
    """
    challenge = auth.create_challenge(challenge_request.address)
    return ChallengeResponse(message=challenge.message, nonce=challenge.nonce, expires_at=challenge.expires_at)


@router.post(
    "/verify",
    response_model=VerifyResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    },
)
def verify_signature(verify_request: VerifyRequest, auth: AuthService = Depends(get_auth_service)):
    """
    Verifies a signed challenge and returns a JWT access token upon success.

    - **address**: The wallet address claiming to have signed.
    - **message**: The challenge message exactly as returned by /challenge.
    - **signature**: The hex-encoded signature string.
    """
    issued = auth.login(verify_request.address, verify_request.message, verify_request.signature)
    return VerifyResponse(
        address=issued.claims.subject_address,
        token=issued.token,
        roles=issued.claims.roles,
        expires_at=issued.claims.expires_at,
    )


@router.get(
    "/me",
    response_model=SessionClaims,
    responses={status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse}},
)
def read_session(session: SessionClaims = Depends(get_current_session)):
    """Returns the claims of the presented session token."""
    return session
