from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
import logging

from ..dependencies import get_current_session, get_gateway
from ..errors import InsufficientRole
from ..models.auth_models import Role, SessionClaims
from ..models.contract_models import (
    CallKind,
    CallRecordResponse,
    CallStatus,
    ContractCallRequest,
    ContractCallResult,
)
from ..models.data_models import ErrorResponse
from ..services.contract_gateway import ContractGateway

router = APIRouter(
    prefix="/contract",
    tags=["Contract Calls"],
)

logger = logging.getLogger(__name__)

# Outcome -> HTTP status for call results
RESULT_STATUS_CODES = {
    CallStatus.SUCCESS: status.HTTP_200_OK,
    CallStatus.PENDING: status.HTTP_202_ACCEPTED,
    CallStatus.REVERTED: status.HTTP_409_CONFLICT,
    CallStatus.FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def send_result(result: ContractCallResult, response: Response) -> ContractCallResult:
    response.status_code = RESULT_STATUS_CODES[result.status]
    return result


@router.post(
    "/calls",
    response_model=ContractCallResult,
    responses={
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
    },
)
def execute_contract_call(
    call_request: ContractCallRequest,
    response: Response,
    session: SessionClaims = Depends(get_current_session),
    gateway: ContractGateway = Depends(get_gateway),
):
    """
    Executes a call against the invoice contract.

    Reads are open to any authenticated wallet; writes require the admin
    role. Writes are idempotent per `idempotency_key`: repeating a key
    returns the recorded result, and a key still in progress answers 409.
    """
    if call_request.call_kind == CallKind.WRITE and not session.has_any_role(Role.ADMIN):
        raise InsufficientRole()
    logger.info(
        f"{session.subject_address} requested {call_request.call_kind.value} "
        f"{call_request.method_name} (key {call_request.idempotency_key})"
    )
    result = gateway.execute(call_request)
    return send_result(result, response)


@router.get(
    "/calls/{idempotency_key}",
    response_model=CallRecordResponse,
    responses={
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    },
)
def get_contract_call(
    idempotency_key: str,
    wait_seconds: float = Query(0.0, ge=0.0, le=30.0, description="Wait this long for an in-flight call to finish."),
    session: SessionClaims = Depends(get_current_session),
    gateway: ContractGateway = Depends(get_gateway),
):
    """
    Reports what happened to a write call. Pending transactions are
    re-checked against the node on every request.
    """
    if wait_seconds > 0:
        gateway.wait_for(idempotency_key, wait_seconds)
    record = gateway.get_call(idempotency_key)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No call tracked for key: {idempotency_key}",
        )
    return CallRecordResponse(
        idempotency_key=record.idempotency_key,
        state=record.state,
        first_seen_at=record.first_seen_at,
        completed_at=record.completed_at,
        result=record.result,
    )
