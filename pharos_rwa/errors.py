from fastapi import status


class PharosError(Exception):
    """Base class for every error the core raises.

    ``code`` is the stable identifier returned to clients, ``status_code`` the
    HTTP status the app's exception handler answers with.
    """

    code = "InternalError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# --- Authentication ---

class AuthError(PharosError):
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidAddress(PharosError):
    """Invalid address format."""
    code = "InvalidAddress"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidChallenge(AuthError):
    """Challenge message is malformed or bound to another domain."""
    code = "InvalidChallenge"


class InvalidSignature(AuthError):
    """Signature does not recover to the claimed address."""
    code = "InvalidSignature"


class NonceExpired(AuthError):
    """Nonce not found or expired."""
    code = "NonceExpired"


class NonceAlreadyUsed(AuthError):
    """Nonce already used."""
    code = "NonceAlreadyUsed"


class NonceMismatch(AuthError):
    """Nonce does not match the outstanding challenge."""
    code = "NonceMismatch"


class TokenExpired(AuthError):
    """Session token has expired."""
    code = "TokenExpired"


class TokenInvalidSignature(AuthError):
    """Session token could not be verified."""
    code = "TokenInvalidSignature"


class InsufficientRole(PharosError):
    """Session does not carry a role allowed to perform this action."""
    code = "InsufficientRole"
    status_code = status.HTTP_403_FORBIDDEN


# --- Contract gateway ---

class GatewayError(PharosError):
    status_code = status.HTTP_502_BAD_GATEWAY


class RpcUnavailable(GatewayError):
    """Blockchain node is unreachable."""
    code = "RpcUnavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class RpcTimeout(GatewayError):
    """Blockchain node did not answer in time."""
    code = "RpcTimeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    retryable = True


class RpcRejected(GatewayError):
    """Blockchain node rejected the request."""
    code = "RpcRejected"


class ContractReverted(GatewayError):
    """Contract execution reverted."""
    code = "ContractReverted"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str | None = None, reason: str | None = None):
        super().__init__(message or (f"Execution reverted: {reason}" if reason else None))
        self.reason = reason


class InvalidContractCall(GatewayError):
    """Contract call is invalid (unknown method or bad parameters)."""
    code = "InvalidContractCall"
    status_code = status.HTTP_400_BAD_REQUEST


class GasEstimationFailed(GatewayError):
    """Gas estimation failed."""
    code = "GasEstimationFailed"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class AlreadyInFlight(GatewayError):
    """A call with this idempotency key is already in progress."""
    code = "AlreadyInFlight"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, key: str):
        super().__init__(f"Call '{key}' is already in progress.")
        self.key = key


class AlreadyCompleted(GatewayError):
    """A call with this idempotency key has already completed."""
    code = "AlreadyCompleted"
    status_code = status.HTTP_200_OK

    def __init__(self, key: str, result):
        super().__init__(f"Call '{key}' already completed.")
        self.key = key
        self.result = result


class AdmissionLimitExceeded(GatewayError):
    """Too many calls in flight to the blockchain node."""
    code = "AdmissionLimitExceeded"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class GatewayNotConfigured(GatewayError):
    """Contract gateway is not configured."""
    code = "GatewayNotConfigured"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class IdempotencyKeyMismatch(GatewayError):
    """Idempotency key was already used for a different call."""
    code = "IdempotencyKeyMismatch"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, key: str):
        super().__init__(f"Idempotency key '{key}' was already used for a different call.")
        self.key = key
