"""Builds the message a wallet signs to log in.

Messages follow Sign-In with Ethereum (EIP-4361, version 1): the domain,
URI and chain id bind a signature to this service, the statement states
the purpose, and the nonce and timestamps tie it to one outstanding
challenge in the NonceStore.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

from siwe import SiweMessage

from ..errors import InvalidChallenge
from .nonce_store import Nonce, NonceStore

logger = logging.getLogger(__name__)

SIWE_VERSION = "1"


@dataclass(frozen=True)
class ChallengeMessage:
    address: str
    nonce: str
    message: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class ParsedChallenge:
    address: str
    nonce: str
    domain: str
    uri: str
    chain_id: int


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class ChallengeService:
    def __init__(self, nonce_store: NonceStore, domain: str, uri: str, chain_id: int, statement: str):
        self.nonce_store = nonce_store
        self.domain = domain
        self.uri = uri
        self.chain_id = chain_id
        self.statement = statement

    def render(self, nonce: Nonce) -> str:
        """Renders the challenge text for a nonce. Same nonce, same text."""
        siwe_message = SiweMessage(
            domain=self.domain,
            address=nonce.address,
            statement=self.statement,
            uri=self.uri,
            version=SIWE_VERSION,
            chain_id=self.chain_id,
            nonce=nonce.value,
            issued_at=_iso(nonce.issued_at),
            expiration_time=_iso(nonce.expires_at),
        )
        return siwe_message.prepare_message()

    def create_challenge(self, address: str) -> ChallengeMessage:
        """Issues a nonce for ``address`` (dropping its previous one) and renders the message."""
        nonce = self.nonce_store.issue(address)
        message = self.render(nonce)
        return ChallengeMessage(
            address=address,
            nonce=nonce.value,
            message=message,
            issued_at=nonce.issued_at,
            expires_at=nonce.expires_at,
        )

    def parse(self, message: str) -> ParsedChallenge:
        try:
            siwe_message = SiweMessage.from_message(message=message)
        except ValueError as e:
            logger.warning(f"Could not parse challenge message: {e}")
            raise InvalidChallenge("Challenge message is malformed.")
        return ParsedChallenge(
            address=str(siwe_message.address),
            nonce=siwe_message.nonce,
            domain=siwe_message.domain,
            uri=str(siwe_message.uri),
            chain_id=int(siwe_message.chain_id),
        )

    def check_issued(self, parsed: ParsedChallenge, message: str) -> None:
        """Rejects a message that is not the exact text issued for its nonce.

        Only the stored nonce's own rendering is accepted, so a signature over
        an edited statement or validity window never logs anyone in. A missing
        or different nonce is left for NonceStore.consume to report.
        """
        nonce = self.nonce_store.get(parsed.address)
        if nonce is None or not secrets.compare_digest(nonce.value, parsed.nonce):
            return
        if self.render(nonce) != message:
            logger.warning(f"Challenge for {parsed.address} does not match the issued text")
            raise InvalidChallenge("Challenge message was not issued by this service.")

    def check_binding(self, parsed: ParsedChallenge) -> None:
        """Rejects challenges signed for another domain, URI or chain."""
        if parsed.domain != self.domain:
            logger.warning(f"Challenge domain mismatch: expected '{self.domain}', got '{parsed.domain}'")
            raise InvalidChallenge("Domain mismatch. Signature is not valid for this application.")
        if parsed.uri.rstrip("/") != self.uri.rstrip("/"):
            logger.warning(f"Challenge URI mismatch: expected '{self.uri}', got '{parsed.uri}'")
            raise InvalidChallenge("URI mismatch. Signature is not valid for this application.")
        if parsed.chain_id != self.chain_id:
            logger.warning(f"Challenge chain id mismatch: expected {self.chain_id}, got {parsed.chain_id}")
            raise InvalidChallenge("Chain mismatch. Signature is not valid for this application.")
