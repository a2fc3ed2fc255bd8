"""
Submission gateway
The only component that writes to the remote ledger: builds, signs and sends
contract deployments and invocations.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import requests
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_account import Account
from eth_utils import event_abi_to_log_topic, function_abi_to_4byte_selector, keccak
from eth_utils.abi import collapse_if_tuple
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    Web3Exception,
    Web3ValidationError,
)

from .errors import (
    InvalidOperation,
    NetworkError,
    SubmissionOutcomeUnknown,
    UserDeclined,
)

logger = logging.getLogger(__name__)

ABI = Sequence[Dict[str, Any]]

# Transport failures shared by the gateway and the waiter
TRANSIENT_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ProviderConnectionError,
    ConnectionError,
    TimeoutError,
)
_INVALID_ERRORS = (
    Web3ValidationError,
    Web3Exception,
    EncodingError,
    TypeError,
    ValueError,
)


@dataclass(frozen=True)
class Deploy:
    """Create a contract from a fully linked payload"""
    payload: str
    constructor_args: Tuple[Any, ...] = ()
    interface_spec: ABI = field(default=(), compare=False, repr=False)


@dataclass(frozen=True)
class Invoke:
    """Call a state-changing method on a deployed contract"""
    target: str
    method: str
    args: Tuple[Any, ...] = ()
    interface_spec: ABI = field(default=(), compare=False, repr=False)


Operation = Union[Deploy, Invoke]


@dataclass(frozen=True)
class PendingHandle:
    transaction_hash: str
    operation: Operation = field(repr=False)
    nonce: Optional[int] = None
    submitted_at: datetime = field(default_factory=datetime.now, compare=False)


# --- ABI argument codec ---

def _input_types(entry: Dict[str, Any]) -> List[str]:
    return [collapse_if_tuple(dict(i)) for i in entry.get('inputs', [])]


def _find_function(abi: ABI, method: str, argc: int) -> Dict[str, Any]:
    candidates = [e for e in abi if e.get('type') == 'function' and e.get('name') == method]
    if not candidates:
        raise InvalidOperation(f"Method {method} not found in interface")
    for entry in candidates:
        if len(entry.get('inputs', [])) == argc:
            return entry
    raise InvalidOperation(
        f"Method {method} does not take {argc} argument(s)"
    )


def _constructor(abi: ABI) -> Optional[Dict[str, Any]]:
    return next((e for e in abi if e.get('type') == 'constructor'), None)


def _encode_args(types: List[str], args: Sequence[Any], what: str) -> bytes:
    if len(types) != len(args):
        raise InvalidOperation(f"{what} expects {len(types)} argument(s), got {len(args)}")
    try:
        return encode(types, list(args))
    except (EncodingError, TypeError, ValueError) as e:
        raise InvalidOperation(f"Cannot encode arguments for {what}: {e}") from e


def encode_invocation(abi: ABI, method: str, args: Sequence[Any]) -> bytes:
    """Selector followed by the ABI encoded arguments"""
    entry = _find_function(abi, method, len(args))
    return function_abi_to_4byte_selector(entry) + _encode_args(_input_types(entry), args, method)


def encode_deployment(abi: ABI, payload: str, constructor_args: Sequence[Any]) -> bytes:
    """Creation payload followed by the ABI encoded constructor arguments"""
    try:
        code = bytes.fromhex(payload[2:] if payload.startswith('0x') else payload)
    except ValueError as e:
        raise InvalidOperation(f"Deployment payload is not valid hex: {e}") from e
    ctor = _constructor(abi)
    types = _input_types(ctor) if ctor else []
    return code + _encode_args(types, constructor_args, 'constructor')


def _checksum(types: List[str], values: Sequence[Any]) -> Tuple[Any, ...]:
    out = []
    for typ, value in zip(types, values):
        if typ == 'address':
            value = Web3.to_checksum_address(value)
        elif typ.startswith('address[') and isinstance(value, (list, tuple)):
            value = tuple(Web3.to_checksum_address(v) for v in value)
        out.append(value)
    return tuple(out)


def decode_invocation(abi: ABI, data: Union[bytes, str]) -> Tuple[str, Tuple[Any, ...]]:
    """
    Reverse of encode_invocation.

    Returns:
        (method name, decoded arguments) with addresses in checksum form
    """
    if isinstance(data, str):
        data = bytes.fromhex(data[2:] if data.startswith('0x') else data)
    selector, body = data[:4], data[4:]
    for entry in abi:
        if entry.get('type') != 'function':
            continue
        if function_abi_to_4byte_selector(entry) == selector:
            types = _input_types(entry)
            try:
                values = decode(types, body)
            except DecodingError as e:
                raise InvalidOperation(f"Cannot decode {entry['name']} call data: {e}") from e
            return entry['name'], _checksum(types, values)
    raise InvalidOperation(f"No method with selector 0x{selector.hex()} in interface")


def _as_bytes(value: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(value[2:] if value.startswith('0x') else value)


def decode_event(abi: ABI, event_name: str, logs: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Decode the logs of one event type out of a receipt.

    Logs of other events are skipped. Indexed arguments must be static types.
    """
    entry = next(
        (e for e in abi if e.get('type') == 'event' and e.get('name') == event_name), None
    )
    if entry is None:
        raise InvalidOperation(f"Event {event_name} not found in interface")
    topic = event_abi_to_log_topic(entry)
    indexed = [i for i in entry.get('inputs', []) if i.get('indexed')]
    plain = [i for i in entry.get('inputs', []) if not i.get('indexed')]

    events = []
    for log in logs:
        topics = [_as_bytes(t) for t in log.get('topics', [])]
        if not topics or topics[0] != topic:
            continue
        args: Dict[str, Any] = {}
        for inp, raw in zip(indexed, topics[1:]):
            types = [collapse_if_tuple(dict(inp))]
            args[inp['name']] = _checksum(types, decode(types, raw))[0]
        plain_types = [collapse_if_tuple(dict(i)) for i in plain]
        values = _checksum(plain_types, decode(plain_types, _as_bytes(log.get('data', b''))))
        for inp, value in zip(plain, values):
            args[inp['name']] = value
        events.append(args)
    return events

# --- Signers ---

class LocalSigner:
    """
    Signs with a private key held in memory.

    An optional ``approve`` callback sees every transaction before signing and
    can decline it, the way a wallet prompt would.
    """

    def __init__(self, private_key: str,
                 approve: Optional[Callable[[Dict[str, Any]], bool]] = None):
        self.account = Account.from_key(private_key)
        self.approve = approve

    @property
    def address(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        if self.approve is not None and not self.approve(tx):
            raise UserDeclined(f"Signer {self.address} declined the transaction")
        return bytes(self.account.sign_transaction(tx).raw_transaction)


# --- Gateways ---

class SubmissionGateway:
    """Interface of the ledger write boundary"""

    @property
    def caller_address(self) -> str:
        raise NotImplementedError

    def submit(self, operation: Operation) -> PendingHandle:
        raise NotImplementedError


@contextmanager
def _translate_errors(stage: str):
    try:
        yield
    except (UserDeclined, InvalidOperation, NetworkError):
        raise
    except ContractLogicError as e:
        raise InvalidOperation(f"{stage}: execution would revert: {e}") from e
    except TRANSIENT_ERRORS as e:
        raise NetworkError(f"{stage}: {e}") from e
    except _INVALID_ERRORS as e:
        raise InvalidOperation(f"{stage}: {e}") from e


class Web3Gateway(SubmissionGateway):
    """Submits signed transactions through a web3 provider"""

    def __init__(self, w3: Web3, signer: LocalSigner, chain_id: Optional[int] = None,
                 gas_multiplier: float = 1.2):
        self.w3 = w3
        self.signer = signer
        self.chain_id = chain_id
        self.gas_multiplier = gas_multiplier

    @property
    def caller_address(self) -> str:
        return self.signer.address

    def build_transaction(self, operation: Operation) -> Dict[str, Any]:
        """Encode the operation and fill in nonce, gas and chain id"""
        if isinstance(operation, Deploy):
            data = encode_deployment(operation.interface_spec, operation.payload,
                                     operation.constructor_args)
            tx: Dict[str, Any] = {}
        elif isinstance(operation, Invoke):
            data = encode_invocation(operation.interface_spec, operation.method, operation.args)
            with _translate_errors("target address"):
                tx = {'to': Web3.to_checksum_address(operation.target)}
        else:
            raise InvalidOperation(f"Unsupported operation: {operation!r}")

        with _translate_errors("building transaction"):
            tx.update({
                'from': self.caller_address,
                'data': Web3.to_hex(data),
                'nonce': self.w3.eth.get_transaction_count(self.caller_address, 'pending'),
                'chainId': self.chain_id if self.chain_id is not None else self.w3.eth.chain_id,
            })
            gas = self.w3.eth.estimate_gas(tx)
            tx['gas'] = int(gas * self.gas_multiplier)
            tx['gasPrice'] = self.w3.eth.gas_price
        return tx

    def submit(self, operation: Operation) -> PendingHandle:
        tx = self.build_transaction(operation)
        raw = self.signer.sign_transaction(tx)
        local_hash = Web3.to_hex(keccak(raw))
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except TRANSIENT_ERRORS as e:
            raise SubmissionOutcomeUnknown(local_hash, str(e)) from e
        except (ContractLogicError,) + _INVALID_ERRORS as e:
            raise InvalidOperation(f"Ledger rejected transaction: {e}") from e

        handle = PendingHandle(Web3.to_hex(tx_hash), operation, tx['nonce'])
        logger.info(f"Transaction sent: {handle.transaction_hash} (nonce {tx['nonce']})")
        return handle
