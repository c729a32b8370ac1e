"""
Transaction lifecycle: nonce allocation, fee pricing, signing, broadcast and
confirmation polling.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Sequence, Set, Union, TYPE_CHECKING

from pydantic import ValidationError
from web3 import Web3

from .codec import hex_to_bytes
from .exceptions import (
    BindLayerError,
    CallRevertedError,
    ConfirmationTimeoutError,
    DecodeError,
    RejectedError,
    SigningError,
    TransactionRevertedError,
    TransportError,
)
from .models import FeeQuote, SignedTransaction, TransactionIntent, TxReceipt
from .transport.base import LedgerTransport

if TYPE_CHECKING:
    from .codec import SchemaCodec
    from .signer import Signer

# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 300000
GAS_ESTIMATE_BUFFER = 1.1
DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_REPLACEMENT_BUMP = 10

RevertDecoder = Callable[[bytes], Optional[str]]


class NonceManager:
    """
    Per-account nonce allocation.

    Each account has its own lock, so distinct accounts never contend. The
    next nonce is the larger of the local counter and the node's pending
    count, which keeps concurrent allocations strictly increasing while
    picking up transactions sent by other processes. Nonces given back with
    ``release`` are handed out again, lowest first, before the counter
    advances, so a dropped allocation never leaves a hole behind a later
    one that is already in flight.
    """

    def __init__(self, transport: LedgerTransport):
        self.transport = transport
        self._next: Dict[str, int] = {}
        self._released: Dict[str, Set[int]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def _lock_for(self, account: str) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(account)
            if lock is None:
                lock = self._locks[account] = threading.Lock()
            return lock

    def allocate(self, account: str) -> int:
        """
        Reserve the next nonce of ``account``.

        Raises:
            TransportError: If the pending count could not be read; nothing
                is reserved in that case
        """
        account = Web3.to_checksum_address(account)
        with self._lock_for(account):
            pending = self.transport.get_transaction_count(account, "pending")
            released = {n for n in self._released.get(account, ()) if n >= pending}
            if released:
                nonce = min(released)
                released.discard(nonce)
                self._released[account] = released
            else:
                self._released.pop(account, None)
                nonce = max(self._next.get(account, 0), pending)
            self._next[account] = max(self._next.get(account, 0), nonce + 1)
        logger.debug(f"Allocated nonce {nonce} for {account} (node pending count {pending})")
        return nonce

    def release(self, account: str, nonce: int) -> bool:
        """
        Give back a nonce that never reached the node.

        Returns:
            True if the nonce will be handed out again, False if it was not
            outstanding
        """
        account = Web3.to_checksum_address(account)
        with self._lock_for(account):
            next_nonce = self._next.get(account)
            released = self._released.setdefault(account, set())
            if next_nonce is None or nonce >= next_nonce or nonce in released:
                return False
            released.add(nonce)
            # Shrink the counter over released nonces at its top
            while next_nonce - 1 in released:
                next_nonce -= 1
                released.discard(next_nonce)
            self._next[account] = next_nonce
        logger.debug(f"Released nonce {nonce} for {account}")
        return True

    def resync(self, account: str) -> None:
        """Forget the local state; the next allocation trusts the node."""
        account = Web3.to_checksum_address(account)
        with self._lock_for(account):
            self._next.pop(account, None)
            self._released.pop(account, None)
        logger.info(f"Nonce counter for {account} resynchronised with the node")

    def peek(self, account: str) -> Optional[int]:
        """Next nonce the local state would hand out, if known."""
        account = Web3.to_checksum_address(account)
        with self._lock_for(account):
            released = self._released.get(account)
            if released:
                return min(released)
            return self._next.get(account)


class TransactionManager:
    """
    Drives state-changing calls from intent to receipt.

    Args:
        transport: Ledger transport
        nonces: NonceManager shared by every sender of this process
        confirmation_timeout: Default receipt polling budget in seconds
        poll_interval: Receipt polling interval in seconds
        default_gas_limit: Gas limit used when estimation fails
    """

    def __init__(
        self,
        transport: LedgerTransport,
        nonces: Optional[NonceManager] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        default_gas_limit: int = DEFAULT_GAS_LIMIT,
    ):
        self.transport = transport
        self.nonces = nonces or NonceManager(transport)
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.default_gas_limit = default_gas_limit
        self._chain_id: Optional[int] = None

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.transport.chain_id()
        return self._chain_id

    # -- pricing ----------------------------------------------------------

    def quote_fees(self, override: Optional[FeeQuote] = None) -> FeeQuote:
        """
        Price a transaction: fee market when the chain has a base fee, legacy otherwise.

        Raises:
            TransportError: If the fee queries failed
        """
        if override is not None:
            return override
        base_fee = self.transport.base_fee()
        if base_fee is not None:
            tip = self.transport.max_priority_fee()
            return FeeQuote(max_fee_per_gas=2 * base_fee + tip, max_priority_fee_per_gas=tip)
        return FeeQuote(gas_price=self.transport.gas_price())

    def estimate_gas(self, intent: TransactionIntent, sender: str) -> int:
        """Gas limit for an intent: the hint, the node estimate plus 10%, or the default."""
        if intent.gas_limit is not None:
            return intent.gas_limit
        tx: Dict[str, Any] = {"from": sender, "data": intent.data, "value": intent.value}
        if intent.to is not None:
            tx["to"] = intent.to
        try:
            gas = int(self.transport.estimate_gas(tx) * GAS_ESTIMATE_BUFFER)
            logger.debug(f"Estimated gas: {gas}")
            return gas
        except BindLayerError as e:
            # Fallback to default gas if estimation fails
            logger.warning(f"Gas estimation failed, using default: {self.default_gas_limit}. Error: {e}")
            return self.default_gas_limit

    # -- lifecycle --------------------------------------------------------

    def _sign(
        self,
        signer: "Signer",
        nonce: int,
        to: Optional[str],
        value: int,
        data: str,
        gas: int,
        fees: FeeQuote,
        replaces: Optional[str] = None,
        method: Optional[str] = None,
    ) -> SignedTransaction:
        tx: Dict[str, Any] = {
            "chainId": self.chain_id(),
            "nonce": nonce,
            "value": value,
            "data": data,
            "gas": gas,
            **fees.as_tx_fields(),
        }
        if to is not None:
            tx["to"] = Web3.to_checksum_address(to)

        try:
            signed = signer.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None)
            if raw is None:
                # Older eth_account releases and custom signers
                raw = signed.rawTransaction
            tx_hash = signed.hash
        except Exception as e:
            logger.error(f"Transaction signing failed: {e}")
            raise SigningError(f"Failed to sign transaction: {str(e)}", nonce=nonce)

        return SignedTransaction(
            chain_id=tx["chainId"],
            nonce=nonce,
            sender=Web3.to_checksum_address(signer.address),
            to=tx.get("to"),
            value=value,
            data=data,
            gas=gas,
            fees=fees,
            raw_transaction=bytes(raw),
            tx_hash=tx_hash,
            replaces=replaces,
            method=method,
        )

    def broadcast(self, signed: SignedTransaction) -> str:
        """
        Send a signed transaction. Safe to repeat after a TransportError.

        Raises:
            RejectedError: If the node refused it. A nonce rejection resyncs the
                sender; any other rejection gives the nonce back, except for
                replacements, whose nonce is still held by the original
            TransportError: If the node could not be reached
        """
        try:
            tx_hash = self.transport.send_raw_transaction(signed)
        except RejectedError as e:
            if e.kind == RejectedError.NONCE:
                self.nonces.resync(signed.sender)
            elif signed.replaces is None and not self.nonces.release(signed.sender, signed.nonce):
                self.nonces.resync(signed.sender)
            raise
        logger.info(f"Transaction sent: {tx_hash}")
        return tx_hash

    def submit(
        self,
        intent: TransactionIntent,
        signer: "Signer",
        fees: Optional[FeeQuote] = None,
    ) -> SignedTransaction:
        """
        Allocate a nonce, price, sign and broadcast an intent.

        Returns:
            The broadcast SignedTransaction

        Raises:
            TransportError: If a query or the broadcast could not reach the node
            SigningError: If the signer failed (the nonce stays allocated)
            RejectedError: If the node refused the transaction
        """
        sender = Web3.to_checksum_address(signer.address)
        nonce = self.nonces.allocate(sender)
        try:
            quote = self.quote_fees(fees)
            gas = self.estimate_gas(intent, sender)
            self.chain_id()
        except TransportError:
            # Nothing was signed with this nonce
            if not self.nonces.release(sender, nonce):
                self.nonces.resync(sender)
            raise

        signed = self._sign(
            signer,
            nonce,
            intent.to,
            intent.value,
            intent.data,
            gas,
            quote,
            method=intent.method,
        )
        self.broadcast(signed)
        return signed

    def wait_for_receipt(
        self,
        tx: Union[SignedTransaction, str],
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        decode_revert: Optional[RevertDecoder] = None,
    ) -> TxReceipt:
        """
        Poll for inclusion at a constant interval.

        Args:
            tx: The SignedTransaction (enables revert replay) or a bare hash
            timeout: Polling budget in seconds
            poll_interval: Seconds between receipt queries
            cancel: Set to abandon waiting
            decode_revert: Renders revert data of a replayed call

        Returns:
            Receipt of a successful transaction

        Raises:
            TransactionRevertedError: If the transaction was included but failed
            ConfirmationTimeoutError: If inclusion was not seen in time or
                waiting was cancelled; the transaction may still be included
            TransportError: If a receipt query failed
            DecodeError: If the node returned a malformed receipt
        """
        signed = tx if isinstance(tx, SignedTransaction) else None
        tx_hash = signed.tx_hash if signed is not None else tx
        timeout = self.confirmation_timeout if timeout is None else timeout
        interval = self.poll_interval if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise ConfirmationTimeoutError(
                    f"Stopped waiting for {tx_hash}: cancelled", tx_hash=tx_hash, cancelled=True
                )

            raw = self.transport.get_transaction_receipt(tx_hash)
            if raw is not None:
                try:
                    receipt = TxReceipt.model_validate(raw)
                except ValidationError as e:
                    raise DecodeError(f"Malformed receipt for {tx_hash}: {str(e)}")
                if receipt.succeeded:
                    logger.info(f"Transaction {tx_hash} confirmed in block {receipt.block_number}")
                    return receipt
                reason = receipt.revert_reason or self._replay_revert(signed, receipt, decode_revert)
                logger.error(f"Transaction {tx_hash} reverted in block {receipt.block_number}: {reason}")
                raise TransactionRevertedError(
                    f"Transaction {tx_hash} reverted: {reason or 'no reason given'}",
                    receipt=receipt,
                    reason=reason,
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConfirmationTimeoutError(
                    f"Transaction {tx_hash} not included after {timeout}s", tx_hash=tx_hash
                )
            delay = min(interval, remaining)
            if cancel is not None:
                cancel.wait(delay)
            else:
                time.sleep(delay)

    def _replay_revert(
        self,
        signed: Optional[SignedTransaction],
        receipt: TxReceipt,
        decode_revert: Optional[RevertDecoder],
    ) -> Optional[str]:
        """Re-run a failed call against the state before its block to learn why."""
        if signed is None or signed.to is None:
            return None
        call = {"from": signed.sender, "to": signed.to, "data": signed.data, "value": signed.value}
        block = max(receipt.block_number - 1, 0)
        try:
            self.transport.call(call, block)
        except CallRevertedError as e:
            if e.data and decode_revert is not None:
                return decode_revert(e.data)
            return e.reason
        except TransportError as e:
            logger.warning(f"Could not replay reverted transaction {signed.tx_hash}: {e}")
        return None

    def transact(
        self,
        intent: TransactionIntent,
        signer: "Signer",
        fees: Optional[FeeQuote] = None,
        wait: bool = True,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        decode_revert: Optional[RevertDecoder] = None,
    ) -> Union[TxReceipt, SignedTransaction]:
        """
        Submit an intent and, unless ``wait`` is False, wait for its receipt.

        Returns:
            TxReceipt when waiting, else the broadcast SignedTransaction
        """
        signed = self.submit(intent, signer, fees=fees)
        if not wait:
            return signed
        return self.wait_for_receipt(
            signed,
            timeout=timeout,
            poll_interval=poll_interval,
            cancel=cancel,
            decode_revert=decode_revert,
        )

    def replace(
        self,
        signed: SignedTransaction,
        signer: "Signer",
        bump_percent: int = DEFAULT_REPLACEMENT_BUMP,
        fees: Optional[FeeQuote] = None,
    ) -> SignedTransaction:
        """
        Resubmit a pending transaction with the same nonce and higher fees.

        Args:
            signed: The transaction to supersede
            signer: Signer of the original sender
            bump_percent: Fee increase when ``fees`` is not given
            fees: Explicit fees for the replacement

        Returns:
            The broadcast replacement, whose ``replaces`` is the old hash

        Raises:
            ValueError: If the signer is not the original sender
        """
        if Web3.to_checksum_address(signer.address) != Web3.to_checksum_address(signed.sender):
            raise ValueError(f"Replacement must be signed by {signed.sender}")
        quote = fees or signed.fees.bumped(bump_percent)
        replacement = self._sign(
            signer,
            signed.nonce,
            signed.to,
            signed.value,
            signed.data,
            signed.gas,
            quote,
            replaces=signed.tx_hash,
            method=signed.method,
        )
        logger.info(f"Replacing {signed.tx_hash} (nonce {signed.nonce}) with {replacement.tx_hash}")
        self.broadcast(replacement)
        return replacement

    def deploy(
        self,
        bytecode: Union[str, bytes],
        signer: "Signer",
        args: Sequence[Any] = (),
        codec: Optional["SchemaCodec"] = None,
        value: int = 0,
        gas_limit: Optional[int] = None,
        fees: Optional[FeeQuote] = None,
        timeout: Optional[float] = None,
    ) -> TxReceipt:
        """
        Deploy contract bytecode and wait for the creation receipt.

        Args:
            bytecode: Compiled creation code
            signer: Deployer
            args: Constructor arguments, encoded with ``codec``
            codec: Codec of the contract ABI (needed for constructor args)

        Raises:
            SchemaMismatchError: If constructor arguments disagree with the ABI
        """
        if codec is not None:
            data = codec.encode_constructor(bytecode, args)
        else:
            if args:
                raise ValueError("Constructor arguments need the contract codec")
            data = hex_to_bytes(bytecode)
        intent = TransactionIntent(
            to=None,
            data="0x" + data.hex(),
            value=value,
            gas_limit=gas_limit,
            method="constructor",
            args=tuple(args),
        )
        return self.transact(
            intent,
            signer,
            fees=fees,
            timeout=timeout,
            decode_revert=codec.decode_revert if codec is not None else None,
        )
