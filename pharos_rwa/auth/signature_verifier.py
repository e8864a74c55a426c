"""Recovers the signer of a ``personal_sign`` (EIP-191) message."""

import logging

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature, ValidationError as EthKeysValidationError
from web3 import Web3

from ..errors import InvalidAddress, InvalidSignature

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 65
_VALID_RECOVERY_IDS = {0, 1, 27, 28}


def to_checksum_address(address: str) -> str:
    """Validates an address (``0x`` + 40 hex chars) and returns its checksum form."""
    if not isinstance(address, str) or not address.startswith("0x") or len(address) != 42:
        raise InvalidAddress(f"Invalid address format: {address!r}")
    if not Web3.is_address(address):
        raise InvalidAddress(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def _decode_signature(signature: str) -> bytes:
    if not isinstance(signature, str):
        raise InvalidSignature("Signature must be a hex string.")
    hex_part = signature[2:] if signature.startswith(("0x", "0X")) else signature
    try:
        raw = bytes.fromhex(hex_part)
    except ValueError:
        raise InvalidSignature("Signature is not valid hex.")
    if len(raw) != SIGNATURE_LENGTH:
        raise InvalidSignature(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}.")
    v = raw[-1]
    if v not in _VALID_RECOVERY_IDS:
        raise InvalidSignature(f"Invalid recovery id {v}.")
    if v < 27:
        # Some wallets emit 0/1 instead of 27/28
        raw = raw[:-1] + bytes([v + 27])
    return raw


def recover(message: str, signature: str) -> str:
    """Returns the checksum address that signed ``message``."""
    raw = _decode_signature(signature)
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=raw)
    except (BadSignature, EthKeysValidationError, ValueError) as e:
        logger.warning(f"Failed to recover address from signature: {e}")
        raise InvalidSignature("Signature could not be recovered.")
    return Web3.to_checksum_address(recovered)


def verify(claimed_address: str, message: str, signature: str) -> None:
    """Raises InvalidSignature unless ``signature`` over ``message`` was made by ``claimed_address``."""
    claimed = to_checksum_address(claimed_address)
    recovered = recover(message, signature)
    if recovered != claimed:
        logger.warning(f"Signature recovered to {recovered}, expected {claimed}")
        raise InvalidSignature()
    logger.debug(f"Signature verified for {claimed}")
