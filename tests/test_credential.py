import copy
import pickle

import pytest
from eth_account import Account

from pharos_rwa.services.credential import SigningCredential

from conftest import SIGNER_KEY

TX = {
    "to": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    "value": 0,
    "gas": 21_000,
    "gasPrice": 1_000_000_000,
    "nonce": 0,
    "chainId": 5003,
}


def test_derives_address():
    credential = SigningCredential(SIGNER_KEY)
    assert credential.address == Account.from_key(SIGNER_KEY).address


def test_accepts_key_without_prefix():
    assert SigningCredential(SIGNER_KEY[2:]).address == Account.from_key(SIGNER_KEY).address


def test_signs_like_eth_account():
    credential = SigningCredential(SIGNER_KEY)
    expected = Account.sign_transaction(TX, SIGNER_KEY)
    assert credential.sign_transaction(TX).raw_transaction == expected.raw_transaction


def test_repr_does_not_leak_key():
    credential = SigningCredential(SIGNER_KEY)
    assert SIGNER_KEY[2:] not in repr(credential)
    assert SIGNER_KEY[2:] not in str(credential)
    assert "***" in repr(credential)


@pytest.mark.parametrize("bad_key", ["", "0x1234", "zz" * 32])
def test_invalid_key_is_rejected_without_echoing_it(bad_key):
    with pytest.raises(ValueError) as exc_info:
        SigningCredential(bad_key)
    assert str(exc_info.value) == "Invalid signer private key"


def test_clear_zeroes_key_and_blocks_signing():
    credential = SigningCredential(SIGNER_KEY)
    credential.clear()
    assert credential.is_cleared
    with pytest.raises(RuntimeError):
        credential.sign_transaction(TX)


def test_context_manager_clears_on_exit():
    with SigningCredential(SIGNER_KEY) as credential:
        assert not credential.is_cleared
    assert credential.is_cleared


def test_cannot_be_copied_or_pickled():
    credential = SigningCredential(SIGNER_KEY)
    with pytest.raises(TypeError):
        copy.copy(credential)
    with pytest.raises(TypeError):
        copy.deepcopy(credential)
    with pytest.raises(TypeError):
        pickle.dumps(credential)
