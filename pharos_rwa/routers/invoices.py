from fastapi import APIRouter, Depends, HTTPException, Response, status
import logging

from ..auth.signature_verifier import to_checksum_address
from ..dependencies import get_current_session, get_gateway, require_roles
from ..models.auth_models import Role, SessionClaims
from ..models.contract_models import (
    CallKind,
    CallStatus,
    ContractCallRequest,
    ContractCallResult,
    InvoiceRecord,
    IssueInvoiceRequest,
    SettleInvoiceRequest,
)
from ..models.data_models import ErrorResponse
from ..services.contract_gateway import ContractGateway
from .contract import send_result

router = APIRouter(
    prefix="/invoices",
    tags=["Invoices"],
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@router.post(
    "",
    response_model=ContractCallResult,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
)
def issue_invoice(
    invoice_request: IssueInvoiceRequest,
    response: Response,
    session: SessionClaims = Depends(require_roles(Role.CREDITOR, Role.ADMIN)),
    gateway: ContractGateway = Depends(get_gateway),
):
    """Tokenizes a new invoice on-chain. Requires the creditor or admin role."""
    payee = to_checksum_address(invoice_request.payee)
    logger.info(f"{session.subject_address} issuing invoice {invoice_request.invoice_number} for {payee}")
    result = gateway.execute(ContractCallRequest(
        idempotency_key=invoice_request.idempotency_key,
        method_name="issueInvoice",
        params=[invoice_request.invoice_number, payee, invoice_request.amount, invoice_request.due_date],
        call_kind=CallKind.WRITE,
        gas_policy=invoice_request.gas_policy,
    ))
    return send_result(result, response)


@router.get(
    "/{invoice_number}",
    response_model=InvoiceRecord,
    responses={
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
)
def get_invoice(
    invoice_number: str,
    session: SessionClaims = Depends(get_current_session),
    gateway: ContractGateway = Depends(get_gateway),
):
    """Reads an invoice from the contract."""
    result = gateway.execute(ContractCallRequest(
        idempotency_key=f"read:{invoice_number}",
        method_name="getInvoice",
        params=[invoice_number],
        call_kind=CallKind.READ,
    ))
    if result.status == CallStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=result.error_detail.message if result.error_detail else "Contract read failed.",
        )
    if result.status == CallStatus.REVERTED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Invoice not found: {invoice_number}")

    data = result.raw_return_data
    if not isinstance(data, (list, tuple)) or len(data) < 5:
        logger.error(f"Unexpected getInvoice result for {invoice_number}: {data}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Unexpected contract response.")
    issuer, payee, amount, due_date, settled = data[:5]
    if issuer == ZERO_ADDRESS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Invoice not found: {invoice_number}")
    return InvoiceRecord(
        invoice_number=invoice_number,
        issuer=issuer,
        payee=payee,
        amount=amount,
        due_date=due_date,
        settled=settled,
    )


@router.post(
    "/{invoice_number}/settle",
    response_model=ContractCallResult,
    responses={
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
)
def settle_invoice(
    invoice_number: str,
    settle_request: SettleInvoiceRequest,
    response: Response,
    session: SessionClaims = Depends(require_roles(Role.ADMIN)),
    gateway: ContractGateway = Depends(get_gateway),
):
    """Marks an invoice as settled on-chain. Requires the admin role."""
    logger.info(f"{session.subject_address} settling invoice {invoice_number}")
    result = gateway.execute(ContractCallRequest(
        idempotency_key=settle_request.idempotency_key,
        method_name="settleInvoice",
        params=[invoice_number],
        call_kind=CallKind.WRITE,
        gas_policy=settle_request.gas_policy,
    ))
    return send_result(result, response)
