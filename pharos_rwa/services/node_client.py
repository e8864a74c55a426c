"""Thin web3 wrapper around the RPC endpoint and the invoice contract.

This is the only module that talks to the node. Every web3/requests
failure leaves here translated into the error taxonomy so that callers can
tell transient failures (retry) from terminal ones.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    MismatchedABI,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
    Web3ValidationError,
)

from ..errors import (
    ContractReverted,
    InvalidContractCall,
    PharosError,
    RpcRejected,
    RpcTimeout,
    RpcUnavailable,
)

logger = logging.getLogger(__name__)

# --- ABI Loading ---
_SERVICE_DIR = os.path.dirname(__file__)
DEFAULT_ABI_PATH = os.path.abspath(os.path.join(_SERVICE_DIR, os.pardir, "abi", "InvoiceContract.json"))

# Node answers meaning the same raw transaction is already in the pool
_ALREADY_KNOWN_HINTS = ("already known", "known transaction", "already imported", "alreadyknown")
_TRANSIENT_RPC_HINTS = ("timeout", "timed out", "rate limit", "too many requests", "busy", "unavailable", "try again")


def load_abi(path: str = DEFAULT_ABI_PATH) -> List[Dict[str, Any]]:
    """Loads an ABI from a JSON file; accepts a bare ABI list or a build artifact with an 'abi' key."""
    with open(path, "r") as f:
        artifact = json.load(f)
    abi = artifact.get("abi") if isinstance(artifact, dict) else artifact
    if not abi:
        raise ValueError(f"'abi' key not found in artifact file: {path}")
    logger.info(f"Successfully loaded contract ABI from: {path}")
    return abi


def to_json_compatible(value: Any) -> Any:
    """Converts web3 return values (bytes, tuples, AttributeDicts) into JSON-friendly types."""
    if isinstance(value, (bytes, bytearray, HexBytes)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [to_json_compatible(v) for v in value]
    if isinstance(value, dict) or hasattr(value, "items"):
        return {k: to_json_compatible(v) for k, v in value.items()}
    return value


def is_already_known(error: Exception) -> bool:
    message = str(error).lower()
    return any(hint in message for hint in _ALREADY_KNOWN_HINTS)


def classify_error(error: Exception) -> PharosError:
    """Maps a web3/requests exception to the error taxonomy."""
    if isinstance(error, PharosError):
        return error
    if isinstance(error, (requests.exceptions.Timeout, TimeoutError)):
        return RpcTimeout(f"RPC request timed out: {error}")
    if isinstance(error, (requests.exceptions.ConnectionError, ConnectionError)):
        return RpcUnavailable(f"RPC endpoint unreachable: {error}")
    if isinstance(error, requests.exceptions.HTTPError):
        status_code = error.response.status_code if error.response is not None else None
        if status_code is None or status_code >= 500 or status_code == 429:
            return RpcUnavailable(f"RPC endpoint returned HTTP {status_code}")
        return RpcRejected(f"RPC endpoint returned HTTP {status_code}")
    if isinstance(error, ContractLogicError):
        reason = getattr(error, "message", None) or str(error)
        return ContractReverted(reason=reason)
    if isinstance(error, (MismatchedABI, Web3ValidationError)):
        return InvalidContractCall(str(error))
    if isinstance(error, Web3RPCError):
        message = str(error)
        if any(hint in message.lower() for hint in _TRANSIENT_RPC_HINTS):
            return RpcUnavailable(message)
        return RpcRejected(message)
    if isinstance(error, (TypeError, ValueError)):
        # web3 raises these for arguments that do not fit the ABI types
        return InvalidContractCall(str(error))
    raise error


class NodeClient:
    """Owns the Web3 connection and the contract instance."""

    def __init__(self, w3: Web3, contract_address: str, abi: List[Dict[str, Any]]):
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = w3.eth.contract(address=self.contract_address, abi=abi)
        self._functions = {
            entry["name"]: entry for entry in abi if entry.get("type") == "function"
        }
        self._chain_id: Optional[int] = None
        logger.info(f"Contract instance created for address: {self.contract_address}")

    @classmethod
    def from_url(cls, rpc_url: str, contract_address: str, timeout: float = 10.0, abi_path: str = DEFAULT_ABI_PATH) -> "NodeClient":
        # Retries are owned by the gateway, so the provider must not retry on its own
        provider = Web3.HTTPProvider(
            rpc_url,
            request_kwargs={"timeout": timeout},
            exception_retry_configuration=None,
        )
        return cls(Web3(provider), contract_address, load_abi(abi_path))

    def _function(self, method_name: str, params: List[Any]):
        if method_name not in self._functions:
            raise InvalidContractCall(f"Unknown contract method: {method_name}")
        expected = len(self._functions[method_name].get("inputs", []))
        if len(params) != expected:
            raise InvalidContractCall(f"{method_name} expects {expected} parameters, got {len(params)}")
        try:
            return self.contract.functions[method_name](*params)
        except Exception as e:
            raise classify_error(e) from e

    def is_read_only(self, method_name: str) -> bool:
        entry = self._functions.get(method_name)
        if entry is None:
            raise InvalidContractCall(f"Unknown contract method: {method_name}")
        return entry.get("stateMutability") in ("view", "pure")

    def call(self, method_name: str, params: List[Any]) -> Any:
        function = self._function(method_name, params)
        try:
            return to_json_compatible(function.call())
        except Exception as e:
            raise classify_error(e) from e

    def estimate_gas(self, method_name: str, params: List[Any], sender: str) -> int:
        function = self._function(method_name, params)
        try:
            return function.estimate_gas({"from": sender})
        except Exception as e:
            raise classify_error(e) from e

    def gas_price(self) -> int:
        try:
            return self.w3.eth.gas_price
        except Exception as e:
            raise classify_error(e) from e

    def chain_id(self) -> int:
        if self._chain_id is None:
            try:
                self._chain_id = self.w3.eth.chain_id
            except Exception as e:
                raise classify_error(e) from e
        return self._chain_id

    def pending_nonce(self, address: str) -> int:
        try:
            return self.w3.eth.get_transaction_count(address, "pending")
        except Exception as e:
            raise classify_error(e) from e

    def build_transaction(self, method_name: str, params: List[Any], tx_fields: Dict[str, Any]) -> Dict[str, Any]:
        function = self._function(method_name, params)
        try:
            return function.build_transaction(tx_fields)
        except Exception as e:
            raise classify_error(e) from e

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
        except Exception as e:
            raise classify_error(e) from e
        return Web3.to_hex(tx_hash)

    def transaction_known(self, tx_hash: str) -> bool:
        """True when the node has the transaction, either in its pool or mined."""
        try:
            self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        except Exception as e:
            raise classify_error(e) from e
        return True

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Returns the mined receipt, or None while the transaction is pending."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise classify_error(e) from e
        return self._receipt_dict(receipt)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[Dict[str, Any]]:
        """Waits up to ``timeout`` seconds for the receipt; None if it is still pending."""
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            logger.info(f"Transaction {tx_hash} not mined after {timeout}s; still pending")
            return None
        except Exception as e:
            raise classify_error(e) from e
        return self._receipt_dict(receipt)

    def revert_reason(self, tx: Dict[str, Any], block_number: int) -> Optional[str]:
        """Replays a reverted transaction as a call to recover its revert reason."""
        call_fields = {k: tx[k] for k in ("from", "to", "data", "value", "gas") if k in tx}
        try:
            self.w3.eth.call(call_fields, block_identifier=block_number)
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        except (requests.exceptions.RequestException, Web3RPCError) as e:
            logger.warning(f"Could not replay reverted transaction for its reason: {e}")
        return None

    @staticmethod
    def _receipt_dict(receipt) -> Dict[str, Any]:
        return {
            "status": int(receipt["status"]),
            "blockNumber": int(receipt["blockNumber"]),
            "transactionHash": Web3.to_hex(receipt["transactionHash"]),
        }
