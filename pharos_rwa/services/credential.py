import logging

from eth_account import Account
from eth_keys.exceptions import ValidationError as EthKeysValidationError

logger = logging.getLogger(__name__)


class SigningCredential:
    """Owns the backend wallet's private key.

    The key lives in a mutable buffer that is zeroed by ``clear()`` (also on
    close and garbage collection). Python may still hold transient copies
    while signing, so this is a best-effort wipe. Never log or copy the key.
    """

    def __init__(self, private_key: str):
        hex_key = private_key[2:] if private_key.startswith(("0x", "0X")) else private_key
        try:
            self._key = bytearray(bytes.fromhex(hex_key))
            self.address = Account.from_key(bytes(self._key)).address
        except (ValueError, EthKeysValidationError):
            raise ValueError("Invalid signer private key") from None
        logger.info(f"Backend wallet loaded successfully. Address: {self.address}")

    @property
    def is_cleared(self) -> bool:
        return not any(self._key)

    def sign_transaction(self, tx: dict):
        if self.is_cleared:
            raise RuntimeError("Signing credential has been cleared")
        return Account.sign_transaction(tx, bytes(self._key))

    def clear(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0

    close = clear

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.clear()

    def __del__(self):
        # __init__ may have failed before _key existed
        if hasattr(self, "_key"):
            self.clear()

    def __repr__(self) -> str:
        return f"SigningCredential(address={getattr(self, 'address', None)!r}, key='***')"

    def __copy__(self):
        raise TypeError("SigningCredential cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SigningCredential cannot be copied")

    def __reduce__(self):
        raise TypeError("SigningCredential cannot be pickled")
