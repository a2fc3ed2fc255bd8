"""
Confirmation waiter
Blocks until a submitted transaction is mined with enough confirmations.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from .errors import ConfirmationTimeout, Reverted
from .gateway import TRANSIENT_ERRORS, PendingHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outcome:
    transaction_hash: str
    block_number: Optional[int] = None
    final_address: Optional[str] = None
    revert_reason: Optional[str] = None
    logs: Tuple[Any, ...] = ()
    receipt: Optional[Mapping[str, Any]] = field(default=None, compare=False, repr=False)


class ConfirmationWaiter:
    """Interface: turn a pending handle into a finalized outcome"""

    def wait(self, handle: PendingHandle) -> Outcome:
        raise NotImplementedError


class Web3Waiter(ConfirmationWaiter):
    """
    Polls a web3 provider for the receipt of a transaction.

    Args:
        w3: Connected Web3 instance
        timeout: Seconds to wait for the receipt and its confirmations
        poll_interval: Seconds between polls
        confirmations: Blocks (including the inclusion block) required before
            the outcome counts as final
    """

    def __init__(self, w3: Web3, timeout: float = 300, poll_interval: float = 2.0,
                 confirmations: int = 1,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if confirmations < 1:
            raise ValueError("confirmations must be at least 1")
        self.w3 = w3
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.confirmations = confirmations
        self._clock = clock
        self._sleep = sleep

    def wait(self, handle: PendingHandle) -> Outcome:
        tx_hash = handle.transaction_hash
        deadline = self._clock() + self.timeout

        while True:
            receipt = self._poll_receipt(tx_hash, deadline)
            if receipt['status'] != 1:
                reason = self.revert_reason(receipt)
                logger.error(f"Transaction {tx_hash} reverted: {reason}")
                raise Reverted(reason, tx_hash)
            if self._confirmed(tx_hash, receipt, deadline):
                break
            logger.warning(f"Transaction {tx_hash} dropped from block {receipt['blockNumber']}, waiting again")

        logger.info(f"Transaction {tx_hash} confirmed in block {receipt['blockNumber']}")
        return Outcome(
            transaction_hash=tx_hash,
            block_number=receipt['blockNumber'],
            final_address=receipt.get('contractAddress'),
            logs=tuple(receipt.get('logs') or ()),
            receipt=receipt,
        )

    def _pause(self, tx_hash: str, deadline: float):
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise ConfirmationTimeout(tx_hash, self.timeout)
        self._sleep(min(self.poll_interval, remaining))

    def _poll_receipt(self, tx_hash: str, deadline: float) -> Mapping[str, Any]:
        while True:
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                pass
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Receipt poll for {tx_hash} failed, retrying: {e}")
            self._pause(tx_hash, deadline)

    def _confirmed(self, tx_hash: str, receipt: Mapping[str, Any], deadline: float) -> bool:
        """Wait for the confirmation depth; False if the receipt moved or vanished"""
        if self.confirmations == 1:
            return True
        target = receipt['blockNumber'] + self.confirmations - 1
        while True:
            try:
                if self.w3.eth.block_number >= target:
                    break
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Block number poll failed, retrying: {e}")
            self._pause(tx_hash, deadline)

        while True:
            try:
                latest = self.w3.eth.get_transaction_receipt(tx_hash)
                break
            except TransactionNotFound:
                return False
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Receipt re-check for {tx_hash} failed, retrying: {e}")
            self._pause(tx_hash, deadline)
        return latest['blockHash'] == receipt['blockHash']

    def revert_reason(self, receipt: Mapping[str, Any]) -> str:
        """Replay the transaction at its block to recover the revert message"""
        tx_hash = receipt['transactionHash']
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            call = {
                'from': tx['from'],
                'data': tx['input'],
                'value': tx['value'],
                'gas': tx['gas'],
            }
            if tx.get('to'):
                call['to'] = tx['to']
            self.w3.eth.call(call, receipt['blockNumber'])
        except ContractLogicError as e:
            return e.message or str(e)
        except Exception as e:
            logger.warning(f"Could not recover revert reason for {Web3.to_hex(tx_hash)}: {e}")
            return "execution reverted (reason unavailable)"
        return "execution reverted (no reason given)"
