# tests/conftest.py
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from web3 import Web3

from pharos_rwa.auth.auth_service import AuthService, RoleResolver
from pharos_rwa.auth.challenge_service import ChallengeService
from pharos_rwa.auth.nonce_store import NonceStore
from pharos_rwa.auth.session_issuer import SessionIssuer
from pharos_rwa.dependencies import Services
from pharos_rwa.errors import InvalidContractCall
from pharos_rwa.main import create_app
from pharos_rwa.services.contract_gateway import ContractGateway
from pharos_rwa.services.credential import SigningCredential
from pharos_rwa.services.deduplicator import RequestDeduplicator
from pharos_rwa.services.retry import RetryPolicy

# Well-known development keys (hardhat/anvil accounts 0-2)
USER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
ADMIN_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
SIGNER_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"

CONTRACT_ADDRESS = Web3.to_checksum_address("0x" + "ab" * 20)
DOMAIN = "localhost:3000"
URI = "http://localhost:3000"
CHAIN_ID = 5003


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeNode:
    """In-memory stand-in for NodeClient.

    Queue exceptions in ``call_errors`` / ``send_errors`` / ``estimate_errors``
    / ``build_errors`` / ``lookup_errors`` to make the next attempts fail; each
    queued entry is used once. With ``accept_before_error`` a failing send
    still lands in the pool, as when the node's reply is lost.
    """

    METHODS = {"getInvoice": True, "issueInvoice": False, "settleInvoice": False}

    def __init__(self):
        self.call_errors: list[Exception] = []
        self.send_errors: list[Exception] = []
        self.estimate_errors: list[Exception] = []
        self.build_errors: list[Exception] = []
        self.receipt_errors: list[Exception] = []
        self.lookup_errors: list[Exception] = []
        self.call_results: dict[str, Any] = {}
        self.receipt_status = 1
        self.mined = True
        self.gas_estimate = 100_000
        self.accept_before_error = False
        self.calls: list[tuple[str, list]] = []
        self.sent: list[bytes] = []
        self.pool: set[str] = set()
        self.built: list[dict] = []
        self.pending_count = 0
        self.send_gate: threading.Event | None = None
        self.send_started = threading.Event()
        self._lock = threading.Lock()

    def is_read_only(self, method_name):
        if method_name not in self.METHODS:
            raise InvalidContractCall(f"Unknown contract method: {method_name}")
        return self.METHODS[method_name]

    def call(self, method_name, params):
        self.calls.append((method_name, list(params)))
        if self.call_errors:
            raise self.call_errors.pop(0)
        return self.call_results.get(method_name)

    def estimate_gas(self, method_name, params, sender):
        if self.estimate_errors:
            raise self.estimate_errors.pop(0)
        return self.gas_estimate

    def gas_price(self):
        return 1_000_000_000

    def chain_id(self):
        return CHAIN_ID

    def pending_nonce(self, address):
        return self.pending_count

    def build_transaction(self, method_name, params, tx_fields):
        if self.build_errors:
            raise self.build_errors.pop(0)
        tx = dict(tx_fields)
        tx.update({"to": CONTRACT_ADDRESS, "value": 0, "data": "0x" + method_name.encode().hex()})
        self.built.append(tx)
        return tx

    def send_raw_transaction(self, raw_transaction):
        self.send_started.set()
        if self.send_gate is not None:
            self.send_gate.wait(timeout=5)
        tx_hash = Web3.to_hex(Web3.keccak(bytes(raw_transaction)))
        with self._lock:
            self.sent.append(bytes(raw_transaction))
            if self.send_errors:
                if self.accept_before_error:
                    self.pool.add(tx_hash)
                raise self.send_errors.pop(0)
            self.pool.add(tx_hash)
        return tx_hash

    def transaction_known(self, tx_hash):
        if self.lookup_errors:
            raise self.lookup_errors.pop(0)
        return tx_hash in self.pool

    def _receipt(self, tx_hash):
        return {"status": self.receipt_status, "blockNumber": 42, "transactionHash": tx_hash}

    def wait_for_receipt(self, tx_hash, timeout):
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return self._receipt(tx_hash) if self.mined else None

    def get_receipt(self, tx_hash):
        return self._receipt(tx_hash) if self.mined else None

    def revert_reason(self, tx, block_number):
        return "execution reverted: invoice already exists"


def sign_text(message: str, private_key: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return Web3.to_hex(signed.signature)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def user_account():
    return Account.from_key(USER_KEY)


@pytest.fixture()
def admin_account():
    return Account.from_key(ADMIN_KEY)


@pytest.fixture()
def nonce_store(clock: FakeClock) -> NonceStore:
    return NonceStore(ttl_seconds=300, clock=clock)


@pytest.fixture()
def challenge_service(nonce_store: NonceStore) -> ChallengeService:
    return ChallengeService(nonce_store, domain=DOMAIN, uri=URI, chain_id=CHAIN_ID, statement="Sign in to Pharos RWA.")


@pytest.fixture()
def session_issuer(clock: FakeClock) -> SessionIssuer:
    return SessionIssuer([("k1", "test-secret-one")], ttl=timedelta(hours=24), clock=clock)


@pytest.fixture()
def auth_service(nonce_store, challenge_service, session_issuer, admin_account) -> AuthService:
    return AuthService(
        nonce_store,
        challenge_service,
        session_issuer,
        RoleResolver(admin_addresses=[admin_account.address]),
    )


@pytest.fixture()
def fake_node() -> FakeNode:
    return FakeNode()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def deduplicator(clock: FakeClock) -> RequestDeduplicator:
    return RequestDeduplicator(retention_seconds=3600, clock=clock)


@pytest.fixture()
def gateway(fake_node, deduplicator, sleeps) -> ContractGateway:
    return ContractGateway(
        node=fake_node,
        deduplicator=deduplicator,
        credential=SigningCredential(SIGNER_KEY),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.2, factor=2.0),
        confirmation_timeout=1.0,
        max_in_flight=4,
        sleep=sleeps.append,
    )


@pytest.fixture()
def client(auth_service, session_issuer, gateway) -> TestClient:
    app = create_app(Services(auth=auth_service, sessions=session_issuer, gateway=gateway))
    return TestClient(app)


@pytest.fixture()
def login(client: TestClient) -> Callable[[str], str]:
    """Runs the full challenge/verify flow for a key and returns the bearer token."""

    def _login(private_key: str) -> str:
        address = Account.from_key(private_key).address
        challenge = client.post("/rwa/auth/challenge", json={"address": address}).json()
        response = client.post(
            "/rwa/auth/verify",
            json={"address": address, "message": challenge["message"], "signature": sign_text(challenge["message"], private_key)},
        )
        assert response.status_code == 200, response.text
        return response.json()["token"]

    return _login
