from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator


class CallKind(str, Enum):
    READ = "read"
    WRITE = "write"


class CallStatus(str, Enum):
    SUCCESS = "success"
    REVERTED = "reverted"
    PENDING = "pending"
    FAILED = "failed"


class GasMode(str, Enum):
    FIXED = "fixed"
    ESTIMATE = "estimate"


class GasPolicy(BaseModel):
    mode: GasMode = GasMode.ESTIMATE
    gas_limit: Optional[int] = Field(None, gt=0, description="Gas limit used as-is when mode is 'fixed'.")
    multiplier: float = Field(1.2, ge=1.0, description="Applied to the node's estimate when mode is 'estimate'.")
    gas_price_wei: Optional[int] = Field(None, gt=0, description="Overrides the node's gas price.")

    @model_validator(mode="after")
    def _check_fixed_limit(self):
        if self.mode == GasMode.FIXED and self.gas_limit is None:
            raise ValueError("gas_limit is required for a fixed gas policy")
        return self


class ContractCallRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, max_length=128)
    method_name: str = Field(..., min_length=1, description="Contract function name as found in the ABI.")
    params: List[Any] = Field([], description="Ordered function arguments.")
    call_kind: CallKind = CallKind.READ
    gas_policy: GasPolicy = Field(default_factory=GasPolicy)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ContractCallResult(BaseModel):
    status: CallStatus
    transaction_hash: Optional[str] = None   # writes only
    block_number: Optional[int] = None       # once mined
    raw_return_data: Any = None              # reads only
    error_detail: Optional[ErrorDetail] = None
    attempts: int = 0


class DeduplicationState(str, Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"


class CallRecordResponse(BaseModel):
    idempotency_key: str
    state: DeduplicationState
    first_seen_at: datetime
    completed_at: Optional[datetime] = None
    result: Optional[ContractCallResult] = None


# --- Invoice endpoints ---

class IssueInvoiceRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, max_length=128)
    invoice_number: str = Field(..., min_length=1)
    payee: str = Field(..., description="Address of the creditor receiving payment.")
    amount: int = Field(..., gt=0, description="Invoice amount in the token's smallest unit.")
    due_date: int = Field(..., gt=0, description="Unix timestamp of the due date.")
    gas_policy: GasPolicy = Field(default_factory=GasPolicy)

class SettleInvoiceRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, max_length=128)
    gas_policy: GasPolicy = Field(default_factory=GasPolicy)

class InvoiceRecord(BaseModel):
    invoice_number: str
    issuer: str
    payee: str
    amount: int
    due_date: int
    settled: bool
