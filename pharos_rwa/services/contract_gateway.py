"""Executes invoice contract calls against the configured node.

Reads go straight to the node. Writes are claimed in the
RequestDeduplicator first, signed once, and the same raw transaction is
resubmitted on transient failure, so retries never produce a second
on-chain execution. When it is unclear whether a submission reached the
node, the transaction is looked up by hash before the key is released.
"""

import hashlib
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from web3 import Web3

from ..errors import (
    AdmissionLimitExceeded,
    AlreadyCompleted,
    ContractReverted,
    GasEstimationFailed,
    GatewayNotConfigured,
    InvalidContractCall,
    PharosError,
    RpcRejected,
    RpcTimeout,
    RpcUnavailable,
)
from ..models.contract_models import (
    CallKind,
    CallStatus,
    ContractCallRequest,
    ContractCallResult,
    ErrorDetail,
    GasMode,
)
from .credential import SigningCredential
from .deduplicator import DeduplicationRecord, RequestDeduplicator
from .node_client import NodeClient, is_already_known
from .retry import CallExecution, CallState, RetryPolicy

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (RpcUnavailable, RpcTimeout)


def _detail(error: PharosError) -> ErrorDetail:
    return ErrorDetail(code=error.code, message=error.message)


def call_fingerprint(request: ContractCallRequest) -> str:
    """Identifies what a write does, so a reused idempotency key can be told apart."""
    content = json.dumps([request.method_name, request.params], sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()


class ContractGateway:
    def __init__(
        self,
        node: NodeClient,
        deduplicator: RequestDeduplicator,
        credential: Optional[SigningCredential] = None,
        retry_policy: RetryPolicy = RetryPolicy(),
        confirmation_timeout: float = 30.0,
        max_in_flight: int = 8,
        admission_timeout: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.node = node
        self.deduplicator = deduplicator
        self.credential = credential
        self.retry_policy = retry_policy
        self.confirmation_timeout = confirmation_timeout
        self.admission_timeout = admission_timeout
        self._admission = threading.BoundedSemaphore(max_in_flight)
        self._sleep = sleep
        self._nonce_lock = threading.Lock()
        self._next_nonce: Optional[int] = None

    # --- Public API ---

    def execute(self, request: ContractCallRequest) -> ContractCallResult:
        """Runs one call. ``attempts`` in the result counts tries of the stage that decided it."""
        self._check_call_kind(request)
        if request.call_kind == CallKind.READ:
            return self._execute_read(request)
        return self._execute_write(request)

    def get_call(self, key: str) -> Optional[DeduplicationRecord]:
        """Returns the tracked record for ``key``, first checking whether a pending transaction got mined."""
        record = self.deduplicator.get(key)
        if record is None or record.result is None or record.result.status != CallStatus.PENDING:
            return record
        return self.refresh(key) or record

    def refresh(self, key: str) -> Optional[DeduplicationRecord]:
        """Polls the node for a pending write and records its final outcome once mined."""
        record = self.deduplicator.get(key)
        if record is None or record.result is None:
            return record
        result = record.result
        if result.status != CallStatus.PENDING or not result.transaction_hash:
            return record

        receipt = self.node.get_receipt(result.transaction_hash)
        if receipt is None:
            return record
        final = self._result_from_receipt(result.transaction_hash, receipt, result.attempts)
        self.deduplicator.update(key, final)
        record.result = final
        return record

    def wait_for(self, key: str, timeout: float) -> Optional[DeduplicationRecord]:
        """Waits for another caller's in-flight write to finish."""
        return self.deduplicator.wait_for(key, timeout)

    def _check_call_kind(self, request: ContractCallRequest) -> None:
        read_only = self.node.is_read_only(request.method_name)
        if read_only != (request.call_kind == CallKind.READ):
            expected = CallKind.READ if read_only else CallKind.WRITE
            raise InvalidContractCall(
                f"{request.method_name} must be called as a {expected.value}, not a {request.call_kind.value}"
            )

    # --- Reads ---

    def _execute_read(self, request: ContractCallRequest) -> ContractCallResult:
        execution = CallExecution(f"read {request.method_name}", self.retry_policy, self._sleep)
        with self._admitted():
            try:
                value = execution.run(lambda: self.node.call(request.method_name, request.params), stage="call")
            except ContractReverted as e:
                execution.transition(CallState.REVERTED)
                return ContractCallResult(status=CallStatus.REVERTED, error_detail=_detail(e), attempts=execution.stage_attempts)
            except TRANSIENT_ERRORS as e:
                return ContractCallResult(status=CallStatus.FAILED, error_detail=_detail(e), attempts=execution.stage_attempts)
        execution.transition(CallState.SUCCESS)
        return ContractCallResult(status=CallStatus.SUCCESS, raw_return_data=value, attempts=execution.stage_attempts)

    # --- Writes ---

    def _execute_write(self, request: ContractCallRequest) -> ContractCallResult:
        if self.credential is None:
            raise GatewayNotConfigured("No signing credential configured; write calls are unavailable.")
        key = request.idempotency_key
        try:
            guard = self.deduplicator.begin(key, fingerprint=call_fingerprint(request))
        except AlreadyCompleted as e:
            logger.info(f"Call {key} already completed; returning the recorded result")
            return e.result

        with guard:
            with self._admitted():
                result = self._submit(request)
            if result.status != CallStatus.FAILED:
                guard.complete(result)
            # A failed call leaves the guard unresolved, releasing the key for a retry
            return result

    def _submit(self, request: ContractCallRequest) -> ContractCallResult:
        key = request.idempotency_key
        execution = CallExecution(f"write {key}", self.retry_policy, self._sleep)
        sender = self.credential.address
        logger.info(f"Submitting {request.method_name} for call {key} from {sender}")

        try:
            gas_limit, gas_price, chain_id = execution.run(lambda: self._fee_parameters(request, sender), stage="prepare")
            pending_count = execution.run(lambda: self.node.pending_nonce(sender), stage="nonce")
        except ContractReverted as e:
            # Estimation already shows the contract rejects this call
            logger.warning(f"Call {key} reverts during gas estimation: {e.message}")
            execution.transition(CallState.REVERTED)
            return ContractCallResult(status=CallStatus.REVERTED, error_detail=_detail(e), attempts=execution.stage_attempts)
        except TRANSIENT_ERRORS as e:
            return ContractCallResult(status=CallStatus.FAILED, error_detail=_detail(e), attempts=execution.stage_attempts)

        nonce = self._allocate_nonce(pending_count)
        try:
            tx = self.node.build_transaction(
                request.method_name,
                request.params,
                {
                    "from": sender,
                    "chainId": chain_id,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "nonce": nonce,
                },
            )
            signed = self.credential.sign_transaction(tx)
        except Exception:
            # Nothing was sent with this nonce, so the next write must reuse it
            self._reset_nonce()
            raise
        tx_hash = Web3.to_hex(signed.hash)
        logger.info(f"Transaction for call {key} signed. Hash: {tx_hash}, nonce {nonce}")

        def send() -> str:
            try:
                return self.node.send_raw_transaction(signed.raw_transaction)
            except RpcRejected as e:
                if is_already_known(e):
                    # An earlier attempt reached the node before the connection dropped
                    logger.info(f"Transaction {tx_hash} already known to the node")
                    return tx_hash
                raise

        try:
            execution.run(send, stage="submit", fail_on_exhaustion=False)
        except (RpcUnavailable, RpcTimeout, RpcRejected) as e:
            if isinstance(e, RpcRejected) and execution.stage_attempts == 1:
                # The node answered the only submission with a rejection
                self._reset_nonce()
                raise
            known = self._known_to_node(tx_hash)
            if known is False:
                self._reset_nonce()
                if isinstance(e, RpcRejected):
                    raise
                execution.transition(CallState.FAILED)
                return ContractCallResult(
                    status=CallStatus.FAILED,
                    transaction_hash=tx_hash,
                    error_detail=_detail(e),
                    attempts=execution.stage_attempts,
                )
            if known is None:
                # An attempt may have landed; keep tracking the hash instead of freeing the key
                self._reset_nonce()
                logger.warning(f"Cannot tell whether {tx_hash} reached the node after {e.code}. Tracking as pending.")
                execution.transition(CallState.PENDING)
                return ContractCallResult(
                    status=CallStatus.PENDING,
                    transaction_hash=tx_hash,
                    error_detail=_detail(e),
                    attempts=execution.stage_attempts,
                )
            logger.info(f"Transaction {tx_hash} reached the node despite {e.code}: {e}")

        attempts = execution.stage_attempts
        execution.transition(CallState.PENDING)
        logger.info(f"Transaction sent! Hash: {tx_hash}. Waiting for receipt...")

        try:
            receipt = self.node.wait_for_receipt(tx_hash, self.confirmation_timeout)
        except (RpcUnavailable, RpcTimeout, RpcRejected) as e:
            # Accepted by the node; the outcome is learned later through refresh()
            logger.warning(f"Could not fetch receipt for {tx_hash}: {e}. Tracking as pending.")
            receipt = None

        if receipt is None:
            return ContractCallResult(status=CallStatus.PENDING, transaction_hash=tx_hash, attempts=attempts)

        result = self._result_from_receipt(tx_hash, receipt, attempts, tx=tx)
        execution.transition(CallState.SUCCESS if result.status == CallStatus.SUCCESS else CallState.REVERTED)
        return result

    def _known_to_node(self, tx_hash: str) -> Optional[bool]:
        """Looks the transaction up by hash; None when the node cannot be asked."""
        try:
            return self.node.transaction_known(tx_hash)
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Lookup of {tx_hash} failed: {e.code}: {e}")
            return None

    def _fee_parameters(self, request: ContractCallRequest, sender: str):
        policy = request.gas_policy
        if policy.mode == GasMode.FIXED:
            gas_limit = policy.gas_limit
        else:
            try:
                estimate = self.node.estimate_gas(request.method_name, request.params, sender)
            except TRANSIENT_ERRORS + (InvalidContractCall, ContractReverted):
                raise
            except PharosError as e:
                logger.warning(f"Gas estimation failed for {request.method_name}: {e}")
                raise GasEstimationFailed(f"Gas estimation failed: {e.message}") from e
            gas_limit = int(estimate * policy.multiplier)
        gas_price = policy.gas_price_wei or self.node.gas_price()
        return gas_limit, gas_price, self.node.chain_id()

    def _result_from_receipt(self, tx_hash: str, receipt: Dict[str, Any], attempts: int, tx: Optional[Dict[str, Any]] = None) -> ContractCallResult:
        block_number = receipt["blockNumber"]
        if receipt["status"] == 1:
            logger.info(f"Transaction {tx_hash} mined in block {block_number}")
            return ContractCallResult(
                status=CallStatus.SUCCESS,
                transaction_hash=tx_hash,
                block_number=block_number,
                attempts=attempts,
            )
        reason = self.node.revert_reason(tx, block_number) if tx else None
        error = ContractReverted(reason=reason) if reason else ContractReverted("Transaction reverted.")
        logger.error(f"Transaction {tx_hash} reverted in block {block_number}: {error.message}")
        return ContractCallResult(
            status=CallStatus.REVERTED,
            transaction_hash=tx_hash,
            block_number=block_number,
            error_detail=_detail(error),
            attempts=attempts,
        )

    # --- Shared state ---

    @contextmanager
    def _admitted(self):
        if self.admission_timeout > 0:
            admitted = self._admission.acquire(timeout=self.admission_timeout)
        else:
            admitted = self._admission.acquire(blocking=False)
        if not admitted:
            logger.warning("Admission limit reached; rejecting contract call")
            raise AdmissionLimitExceeded()
        try:
            yield
        finally:
            self._admission.release()

    def _allocate_nonce(self, pending_count: int) -> int:
        with self._nonce_lock:
            nonce = pending_count if self._next_nonce is None else max(pending_count, self._next_nonce)
            self._next_nonce = nonce + 1
            return nonce

    def _reset_nonce(self) -> None:
        # Resync from the node's pending count on the next write
        with self._nonce_lock:
            self._next_nonce = None
