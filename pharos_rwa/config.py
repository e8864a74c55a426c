import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name} in environment. Defaulting to {default}.")
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name} in environment. Defaulting to {default}.")
        return default


def _list_env(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _read_signer_key() -> str | None:
    # A mounted secret file takes precedence over the plain variable
    key_file = os.getenv("SIGNER_PRIVATE_KEY_FILE")
    if key_file:
        try:
            with open(key_file, "r") as f:
                return f.read().strip() or None
        except OSError as e:
            logger.error(f"Could not read SIGNER_PRIVATE_KEY_FILE: {e}")
            return None
    return os.getenv("SIGNER_PRIVATE_KEY")


# --- Blockchain ---
RPC_URL = os.getenv("RPC_URL")
INVOICE_CONTRACT_ADDRESS = os.getenv("INVOICE_CONTRACT_ADDRESS")
SIGNER_PRIVATE_KEY = _read_signer_key()
CHAIN_ID = _int_env("CHAIN_ID", 5003)  # Mantle Sepolia

# --- Gateway behaviour ---
RPC_TIMEOUT_SECONDS = _float_env("RPC_TIMEOUT_SECONDS", 10.0)
RPC_MAX_ATTEMPTS = _int_env("RPC_MAX_ATTEMPTS", 3)
RPC_BACKOFF_BASE_SECONDS = _float_env("RPC_BACKOFF_BASE_SECONDS", 0.2)
RPC_BACKOFF_FACTOR = _float_env("RPC_BACKOFF_FACTOR", 2.0)
CONFIRMATION_TIMEOUT_SECONDS = _float_env("CONFIRMATION_TIMEOUT_SECONDS", 30.0)
MAX_IN_FLIGHT_CALLS = _int_env("MAX_IN_FLIGHT_CALLS", 8)
ADMISSION_TIMEOUT_SECONDS = _float_env("ADMISSION_TIMEOUT_SECONDS", 0.0)
IDEMPOTENCY_RETENTION_SECONDS = _int_env("IDEMPOTENCY_RETENTION_SECONDS", 3600)

# --- Challenge (SIWE) settings ---
SIWE_DOMAIN = os.getenv("SIWE_DOMAIN", "localhost:3000")
SIWE_URI = os.getenv("SIWE_URI", f"http://{SIWE_DOMAIN}")
SIWE_STATEMENT = os.getenv("SIWE_STATEMENT", "Sign in to Pharos RWA. This request will not trigger a blockchain transaction.")
NONCE_EXPIRATION_SECONDS = _int_env("NONCE_EXPIRATION_SECONDS", 300)
NONCE_MAX_CAPACITY = _int_env("NONCE_MAX_CAPACITY", 10_000)

# --- JWT Settings ---
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
JWT_KEY_ID = os.getenv("JWT_KEY_ID", "default")
# Retired keys still accepted for verification, formatted "kid:secret,kid:secret"
JWT_PREVIOUS_KEYS = _list_env("JWT_PREVIOUS_KEYS")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ACCESS_TOKEN_EXPIRE_MINUTES = _int_env("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60)

# --- Roles ---
ADMIN_ADDRESSES = _list_env("ADMIN_ADDRESSES")
CREDITOR_ADDRESSES = _list_env("CREDITOR_ADDRESSES")

# --- HTTP ---
API_PREFIX = os.getenv("API_PREFIX", "/rwa")
CORS_ORIGINS = _list_env("CORS_ORIGINS") or ["*"]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Basic validation
if not RPC_URL:
    logger.warning("RPC_URL not found in environment. Contract calls will be unavailable.")
if not INVOICE_CONTRACT_ADDRESS:
    logger.warning("INVOICE_CONTRACT_ADDRESS not found in environment. Contract calls will be unavailable.")
if not SIGNER_PRIVATE_KEY:
    logger.warning("No signer key configured. Write calls will be unavailable.")
if not JWT_SECRET_KEY:
    logger.warning("JWT_SECRET_KEY not found in environment. Sessions will be signed with a per-process key.")
