import logging
from typing import Iterable, List

from ..errors import InvalidChallenge
from ..models.auth_models import Role
from . import signature_verifier
from .challenge_service import ChallengeMessage, ChallengeService
from .nonce_store import NonceStore
from .session_issuer import IssuedToken, SessionIssuer

logger = logging.getLogger(__name__)


class RoleResolver:
    """Maps an authenticated address to its roles.

    Every wallet is an investor; configured enterprise and platform
    addresses additionally get ``creditor`` and ``admin``.
    """

    def __init__(self, admin_addresses: Iterable[str] = (), creditor_addresses: Iterable[str] = ()):
        self.admins = {signature_verifier.to_checksum_address(a) for a in admin_addresses}
        self.creditors = {signature_verifier.to_checksum_address(a) for a in creditor_addresses}

    def roles_for(self, address: str) -> List[Role]:
        roles = [Role.INVESTOR]
        if address in self.creditors:
            roles.append(Role.CREDITOR)
        if address in self.admins:
            roles.append(Role.ADMIN)
        return roles


class AuthService:
    """Challenge/response login: challenge -> signature -> session token."""

    def __init__(
        self,
        nonce_store: NonceStore,
        challenge_service: ChallengeService,
        session_issuer: SessionIssuer,
        role_resolver: RoleResolver,
    ):
        self.nonce_store = nonce_store
        self.challenges = challenge_service
        self.sessions = session_issuer
        self.roles = role_resolver

    def create_challenge(self, address: str) -> ChallengeMessage:
        checksum_address = signature_verifier.to_checksum_address(address)
        return self.challenges.create_challenge(checksum_address)

    def login(self, address: str, message: str, signature: str) -> IssuedToken:
        """Verifies a signed challenge and mints a session token.

        Checks run cheapest-first; the nonce is consumed last so a
        rejected attempt never burns the outstanding challenge.
        """
        checksum_address = signature_verifier.to_checksum_address(address)

        parsed = self.challenges.parse(message)
        if parsed.address != checksum_address:
            logger.warning(f"Challenge was issued to {parsed.address}, login attempted for {checksum_address}")
            raise InvalidChallenge("Challenge was not issued to this address.")
        self.challenges.check_binding(parsed)
        self.challenges.check_issued(parsed, message)

        signature_verifier.verify(checksum_address, message, signature)

        self.nonce_store.consume(checksum_address, parsed.nonce)

        issued = self.sessions.issue(checksum_address, self.roles.roles_for(checksum_address))
        logger.info(f"Login successful for {checksum_address}")
        return issued
