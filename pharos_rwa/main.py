from datetime import timedelta
import logging
import secrets
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .auth.auth_service import AuthService, RoleResolver
from .auth.challenge_service import ChallengeService
from .auth.nonce_store import NonceStore
from .auth.session_issuer import SessionIssuer
from .dependencies import Services
from .errors import PharosError
from .routers import auth, contract, invoices
from .services.contract_gateway import ContractGateway
from .services.credential import SigningCredential
from .services.deduplicator import RequestDeduplicator
from .services.node_client import NodeClient
from .services.retry import RetryPolicy

# Configure basic logging
logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

logger = logging.getLogger(__name__)


def _session_keys():
    if config.JWT_SECRET_KEY:
        keys = [(config.JWT_KEY_ID, config.JWT_SECRET_KEY)]
    else:
        logger.warning("JWT_SECRET_KEY not set; using an ephemeral key. Sessions will not survive a restart.")
        keys = [(config.JWT_KEY_ID, secrets.token_urlsafe(32))]
    for entry in config.JWT_PREVIOUS_KEYS:
        kid, sep, secret = entry.partition(":")
        if not sep or not kid or not secret:
            logger.warning("Ignoring malformed JWT_PREVIOUS_KEYS entry (expected 'kid:secret').")
            continue
        keys.append((kid, secret))
    return keys


def build_gateway(deduplicator: RequestDeduplicator) -> Optional[ContractGateway]:
    """Connects to the node when it is configured; otherwise contract endpoints answer 503."""
    if not config.RPC_URL or not config.INVOICE_CONTRACT_ADDRESS:
        logger.error("Contract gateway disabled: RPC_URL or INVOICE_CONTRACT_ADDRESS missing.")
        return None

    node = NodeClient.from_url(config.RPC_URL, config.INVOICE_CONTRACT_ADDRESS, timeout=config.RPC_TIMEOUT_SECONDS)

    credential = None
    if config.SIGNER_PRIVATE_KEY:
        try:
            credential = SigningCredential(config.SIGNER_PRIVATE_KEY)
        except ValueError as e:
            logger.error(f"Signer key rejected: {e}. Write calls will be unavailable.")
    else:
        logger.warning("Signer key not configured. Cannot sign transactions.")

    return ContractGateway(
        node=node,
        deduplicator=deduplicator,
        credential=credential,
        retry_policy=RetryPolicy(
            max_attempts=config.RPC_MAX_ATTEMPTS,
            base_delay=config.RPC_BACKOFF_BASE_SECONDS,
            factor=config.RPC_BACKOFF_FACTOR,
        ),
        confirmation_timeout=config.CONFIRMATION_TIMEOUT_SECONDS,
        max_in_flight=config.MAX_IN_FLIGHT_CALLS,
        admission_timeout=config.ADMISSION_TIMEOUT_SECONDS,
    )


def build_services() -> Services:
    nonce_store = NonceStore(ttl_seconds=config.NONCE_EXPIRATION_SECONDS, max_capacity=config.NONCE_MAX_CAPACITY)
    challenge_service = ChallengeService(
        nonce_store,
        domain=config.SIWE_DOMAIN,
        uri=config.SIWE_URI,
        chain_id=config.CHAIN_ID,
        statement=config.SIWE_STATEMENT,
    )
    session_issuer = SessionIssuer(
        _session_keys(),
        ttl=timedelta(minutes=config.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        algorithm=config.JWT_ALGORITHM,
    )
    role_resolver = RoleResolver(config.ADMIN_ADDRESSES, config.CREDITOR_ADDRESSES)
    auth_service = AuthService(nonce_store, challenge_service, session_issuer, role_resolver)
    deduplicator = RequestDeduplicator(retention_seconds=config.IDEMPOTENCY_RETENTION_SECONDS)
    return Services(auth=auth_service, sessions=session_issuer, gateway=build_gateway(deduplicator))


async def handle_pharos_error(request: Request, exc: PharosError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Pharos RWA Backend",
        description="Wallet sign-in and idempotent access to the invoice tokenization contract.",
        version="0.1.0",
    )
    app.state.services = services or build_services()

    # --- CORS Configuration ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=config.CORS_ORIGINS != ["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PharosError, handle_pharos_error)

    # Include routers
    app.include_router(auth.router, prefix=config.API_PREFIX)
    app.include_router(contract.router, prefix=config.API_PREFIX)
    app.include_router(invoices.router, prefix=config.API_PREFIX)

    @app.get("/", tags=["Health Check"])
    def read_root():
        gateway = app.state.services.gateway
        return {
            "status": "ok",
            "contract_gateway": "configured" if gateway is not None else "disabled",
            "write_calls": "enabled" if gateway is not None and gateway.credential is not None else "disabled",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("pharos_rwa.main:app", host="0.0.0.0", port=8000, reload=True) # Use reload for development
