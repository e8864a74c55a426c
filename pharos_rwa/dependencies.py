import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .auth.auth_service import AuthService
from .auth.session_issuer import SessionIssuer
from .errors import GatewayNotConfigured, InsufficientRole, TokenInvalidSignature
from .models.auth_models import Role, SessionClaims
from .services.contract_gateway import ContractGateway

logger = logging.getLogger(__name__)

# auto_error=False so a missing header is reported through the same 401 path as a bad token
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Services:
    """Everything the routers need, built once by the app factory."""
    auth: AuthService
    sessions: SessionIssuer
    gateway: Optional[ContractGateway] = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_auth_service(services: Services = Depends(get_services)) -> AuthService:
    return services.auth


def get_gateway(services: Services = Depends(get_services)) -> ContractGateway:
    if services.gateway is None:
        raise GatewayNotConfigured("Contract gateway is not configured (RPC_URL / INVOICE_CONTRACT_ADDRESS).")
    return services.gateway


def get_current_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> SessionClaims:
    """
    Dependency that verifies the bearer token from the Authorization header
    and returns its claims. Raises 401 if the token is missing, invalid or expired.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise TokenInvalidSignature("Missing bearer token.")
    return services.sessions.validate(credentials.credentials)


def require_roles(*roles: Role) -> Callable[..., SessionClaims]:
    """Builds a dependency that only lets sessions holding one of ``roles`` through."""

    def dependency(session: SessionClaims = Depends(get_current_session)) -> SessionClaims:
        if not session.has_any_role(*roles):
            logger.warning(f"{session.subject_address} lacks any of roles {[r.value for r in roles]}")
            raise InsufficientRole()
        return session

    return dependency
