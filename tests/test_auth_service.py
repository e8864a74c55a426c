"""End-to-end login flow against the service objects (no HTTP)."""

import threading

import pytest

from pharos_rwa.auth.auth_service import AuthService
from pharos_rwa.errors import (
    InvalidAddress,
    InvalidChallenge,
    InvalidSignature,
    NonceAlreadyUsed,
    NonceExpired,
    NonceMismatch,
)
from pharos_rwa.models.auth_models import Role

from conftest import ADMIN_KEY, USER_KEY, sign_text


def test_login_issues_token_for_signer(auth_service: AuthService, user_account):
    challenge = auth_service.create_challenge(user_account.address)
    issued = auth_service.login(user_account.address, challenge.message, sign_text(challenge.message, USER_KEY))
    assert issued.claims.subject_address == user_account.address
    assert issued.claims.roles == [Role.INVESTOR]
    assert auth_service.sessions.validate(issued.token).subject_address == user_account.address


def test_reusing_signed_message_fails_with_nonce_already_used(auth_service: AuthService, user_account):
    challenge = auth_service.create_challenge(user_account.address)
    signature = sign_text(challenge.message, USER_KEY)
    auth_service.login(user_account.address, challenge.message, signature)
    with pytest.raises(NonceAlreadyUsed):
        auth_service.login(user_account.address, challenge.message, signature)


def test_lowercase_address_is_accepted(auth_service: AuthService, user_account):
    challenge = auth_service.create_challenge(user_account.address.lower())
    issued = auth_service.login(user_account.address.lower(), challenge.message, sign_text(challenge.message, USER_KEY))
    assert issued.claims.subject_address == user_account.address


def test_admin_address_gets_admin_role(auth_service: AuthService, admin_account):
    challenge = auth_service.create_challenge(admin_account.address)
    issued = auth_service.login(admin_account.address, challenge.message, sign_text(challenge.message, ADMIN_KEY))
    assert Role.ADMIN in issued.claims.roles


def test_signature_from_another_key_is_rejected_without_burning_nonce(auth_service: AuthService, user_account):
    challenge = auth_service.create_challenge(user_account.address)
    with pytest.raises(InvalidSignature):
        auth_service.login(user_account.address, challenge.message, sign_text(challenge.message, ADMIN_KEY))
    # the genuine owner can still log in with the same challenge
    auth_service.login(user_account.address, challenge.message, sign_text(challenge.message, USER_KEY))


def test_challenge_of_another_address_is_rejected(auth_service: AuthService, user_account, admin_account):
    challenge = auth_service.create_challenge(user_account.address)
    with pytest.raises(InvalidChallenge):
        auth_service.login(admin_account.address, challenge.message, sign_text(challenge.message, ADMIN_KEY))


def test_superseded_challenge_is_rejected(auth_service: AuthService, user_account):
    old = auth_service.create_challenge(user_account.address)
    auth_service.create_challenge(user_account.address)
    with pytest.raises(NonceMismatch):
        auth_service.login(user_account.address, old.message, sign_text(old.message, USER_KEY))


def test_expired_challenge_is_rejected(auth_service: AuthService, user_account, clock):
    challenge = auth_service.create_challenge(user_account.address)
    clock.advance(301)
    with pytest.raises(NonceExpired):
        auth_service.login(user_account.address, challenge.message, sign_text(challenge.message, USER_KEY))


def test_bad_address_is_rejected(auth_service: AuthService):
    with pytest.raises(InvalidAddress):
        auth_service.create_challenge("0xnot-an-address")


def test_concurrent_replay_yields_one_session(auth_service: AuthService, user_account):
    challenge = auth_service.create_challenge(user_account.address)
    signature = sign_text(challenge.message, USER_KEY)
    start = threading.Barrier(8)
    tokens, failures = [], []

    def attempt():
        start.wait()
        try:
            tokens.append(auth_service.login(user_account.address, challenge.message, signature))
        except NonceAlreadyUsed as e:
            failures.append(e)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(tokens) == 1
    assert len(failures) == 7


@pytest.mark.parametrize(
    "original, edited",
    [
        ("Sign in to Pharos RWA.", "Approve transfer of all invoices."),
        ("Expiration Time: 2026-01-01T12:05:00Z", "Expiration Time: 2027-01-01T12:05:00Z"),
    ],
)
def test_edited_challenge_text_is_rejected(auth_service: AuthService, user_account, original, edited):
    challenge = auth_service.create_challenge(user_account.address)
    assert original in challenge.message
    edited_message = challenge.message.replace(original, edited)

    with pytest.raises(InvalidChallenge):
        auth_service.login(user_account.address, edited_message, sign_text(edited_message, USER_KEY))
    # the issued text still works
    auth_service.login(user_account.address, challenge.message, sign_text(challenge.message, USER_KEY))
