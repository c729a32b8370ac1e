"""
Event delivery: live log subscriptions and the replay-then-live iterator.
"""
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Set, Tuple

from pydantic import ValidationError

from .exceptions import BindLayerError, DecodeError
from .models import DecodedEvent, LogEvent
from .transport.base import LogStream, StreamSignal

# Configure logger
logger = logging.getLogger(__name__)

Decoder = Callable[[LogEvent], DecodedEvent]


def to_log_event(raw: Dict[str, Any]) -> LogEvent:
    """
    Validate a raw transport log.

    Raises:
        DecodeError: If required log fields are missing or malformed
    """
    try:
        return LogEvent.model_validate(raw)
    except ValidationError as e:
        raise DecodeError(f"Malformed log from transport: {str(e)}")


def _wanted(log: LogEvent, topic0: Optional[str]) -> bool:
    if log.removed:
        logger.debug(f"Skipping removed log {log.transaction_hash}:{log.log_index}")
        return False
    if topic0 is None:
        return True
    return (log.topic0 or "").lower() == topic0.lower()


class ForwardOutcome(str, Enum):
    """How a Subscription's forwarding thread ended."""
    CANCELLED = "cancelled"
    SOURCE_ENDED = "source_ended"
    FAILED = "failed"


class Subscription:
    """
    A live log stream forwarded to a callable by one background thread.

    Logs whose topic0 differs from ``topic0`` are ignored; every other log is
    decoded and handed to ``sink`` in stream order. Forwarding ends when the
    subscription is closed, the stream ends, or decoding, the sink or the
    stream fails; ``outcome`` and ``error`` then tell which.
    """

    def __init__(
        self,
        stream: LogStream,
        decode: Decoder,
        sink: Callable[[DecodedEvent], Any],
        topic0: Optional[str] = None,
        name: str = "events",
    ):
        self._stream = stream
        self._decode = decode
        self._sink = sink
        self._topic0 = topic0
        self._done = threading.Event()
        self.outcome: Optional[ForwardOutcome] = None
        self.error: Optional[Exception] = None
        self.delivered = 0
        self._thread = threading.Thread(
            target=self._forward,
            name=f"bindlayer-subscription-{name}",
            daemon=True,
        )
        self._thread.start()

    @property
    def active(self) -> bool:
        return not self._done.is_set()

    def _forward(self) -> None:
        outcome = ForwardOutcome.CANCELLED
        try:
            while True:
                signal, payload = self._stream.get()
                if signal is StreamSignal.LOG:
                    log = to_log_event(payload)
                    if not _wanted(log, self._topic0):
                        continue
                    event = self._decode(log)
                    self._sink(event)
                    self.delivered += 1
                elif signal is StreamSignal.ERROR:
                    self.error = payload
                    outcome = ForwardOutcome.FAILED
                    logger.warning(f"Log subscription terminated with error: {payload}")
                    break
                elif signal is StreamSignal.END:
                    outcome = ForwardOutcome.SOURCE_ENDED
                    logger.debug("Log subscription source ended")
                    break
                elif signal is StreamSignal.CLOSED:
                    outcome = ForwardOutcome.CANCELLED
                    break
        except Exception as e:
            # Decode or sink failure ends forwarding; kept on .error
            self.error = e
            outcome = ForwardOutcome.FAILED
            logger.error(f"Log forwarding failed: {e}")
        finally:
            self.outcome = outcome
            self._stream.close()
            self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for forwarding to end.

        Returns:
            True if the forwarding thread has finished
        """
        return self._done.wait(timeout)

    def close(self) -> None:
        """Stop forwarding. Idempotent; never blocks on the forwarding thread."""
        self._stream.close()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class IteratorState(str, Enum):
    REPLAYING = "replaying"
    LIVE = "live"
    DRAINING = "draining"
    CLOSED = "closed"
    FAILED = "failed"


class EventIterator:
    """
    Pull-based iterator over historical events followed by live ones.

    ``advance()`` moves to the next event and returns True, or returns False
    once the iterator is closed. History is exhausted before any live event
    is delivered; a log seen in both is delivered once, keyed by
    ``(transaction_hash, log_index)``. Keys are only kept while live logs
    can still overlap the replayed range, i.e. up to the position of the last
    historical event. After a failure every ``advance()`` re-raises the same
    error.

    Args:
        decode: Turns a LogEvent into a DecodedEvent
        history: Finite iterator of historical events, or None
        stream: Live log stream, opened before ``history`` is consumed, or None
        topic0: Only live logs with this topic0 are considered
    """

    def __init__(
        self,
        decode: Decoder,
        history: Optional[Iterator[DecodedEvent]] = None,
        stream: Optional[LogStream] = None,
        topic0: Optional[str] = None,
    ):
        if history is None and stream is None:
            raise ValueError("EventIterator needs a history range, a live stream, or both")
        self._decode = decode
        self._history = history
        self._stream = stream
        self._topic0 = topic0
        self._lock = threading.Lock()
        self._state = IteratorState.REPLAYING if history is not None else IteratorState.LIVE
        self._seen: Set[Tuple[str, int]] = set()
        # (block_number, log_index) of the last replayed event; None once live
        # logs have moved past it
        self._watermark: Optional[Tuple[int, int]] = None
        self._pending_error: Optional[Exception] = None
        self.error: Optional[Exception] = None
        self.event: Optional[DecodedEvent] = None

    @property
    def state(self) -> IteratorState:
        return self._state

    def _transition(self, new_state: IteratorState) -> bool:
        with self._lock:
            if self._state is IteratorState.CLOSED:
                return False
            logger.debug(f"Event iterator {self._state.value} -> {new_state.value}")
            self._state = new_state
            return True

    def _release_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()

    def _fail(self, error: Exception) -> None:
        self.error = error
        self.event = None
        self._transition(IteratorState.FAILED)
        self._release_stream()

    def _finish(self) -> None:
        self.event = None
        self._transition(IteratorState.CLOSED)
        self._release_stream()

    def _replay(self, event: DecodedEvent) -> bool:
        key = event.log.key
        if key in self._seen:
            return False
        self._seen.add(key)
        position = (event.log.block_number, event.log.log_index)
        if self._watermark is None or position > self._watermark:
            self._watermark = position
        self.event = event
        return True

    def _end_replay(self) -> None:
        if self._watermark is None:
            # Nothing replayed, nothing to overlap
            self._seen.clear()

    def _accept_raw(self, raw: Dict[str, Any]) -> bool:
        log = to_log_event(raw)
        if not _wanted(log, self._topic0):
            return False
        overlapping = False
        if self._watermark is not None:
            if (log.block_number, log.log_index) <= self._watermark:
                if log.key in self._seen:
                    return False
                overlapping = True
            else:
                logger.debug(f"Live logs past replayed range, dropping {len(self._seen)} dedup keys")
                self._seen.clear()
                self._watermark = None
        event = self._decode(log)
        if overlapping:
            self._seen.add(log.key)
        self.event = event
        return True

    def advance(self) -> bool:
        """
        Move to the next event.

        Returns:
            True with ``.event`` set, or False once the iterator is closed

        Raises:
            TransportError, DecodeError: The error that failed the iterator
            BindLayerError: The history query raised something unexpected
        """
        while True:
            state = self._state

            if state is IteratorState.CLOSED:
                self.event = None
                return False

            if state is IteratorState.FAILED:
                raise self.error

            if state is IteratorState.REPLAYING:
                history = self._history
                if history is None:
                    # closed concurrently
                    continue
                try:
                    event = next(history)
                except StopIteration:
                    self._history = None
                    if self._stream is not None:
                        self._end_replay()
                        self._transition(IteratorState.LIVE)
                    else:
                        self._finish()
                    continue
                except BindLayerError as e:
                    self._fail(e)
                    raise
                except Exception as e:
                    error = BindLayerError(f"Historical event query failed: {str(e)}")
                    self._fail(error)
                    raise error from e
                if self._state is IteratorState.CLOSED:
                    continue
                if self._replay(event):
                    return True
                continue

            if state is IteratorState.LIVE:
                signal, payload = self._stream.get()
                if signal is StreamSignal.LOG:
                    try:
                        if self._accept_raw(payload):
                            return True
                    except BindLayerError as e:
                        self._fail(e)
                        raise
                elif signal is StreamSignal.ERROR:
                    logger.warning(f"Live log stream failed, draining buffered logs: {payload}")
                    self._pending_error = payload
                    self._transition(IteratorState.DRAINING)
                elif signal is StreamSignal.END:
                    self._transition(IteratorState.DRAINING)
                elif signal is StreamSignal.CLOSED:
                    self._finish()
                continue

            if state is IteratorState.DRAINING:
                signal, payload = self._stream.get_nowait()
                if signal is StreamSignal.LOG:
                    try:
                        if self._accept_raw(payload):
                            return True
                    except BindLayerError as e:
                        self._fail(e)
                        raise
                    continue
                if self._pending_error is not None:
                    self._fail(self._pending_error)
                    continue
                self._finish()

    def close(self) -> None:
        """Release the live stream and leave the iterator CLOSED. Idempotent."""
        with self._lock:
            already = self._state is IteratorState.CLOSED
            self._state = IteratorState.CLOSED
        self._history = None
        self._release_stream()
        if not already:
            logger.debug("Event iterator closed")

    def __iter__(self) -> "EventIterator":
        return self

    def __next__(self) -> DecodedEvent:
        if self.advance():
            return self.event
        raise StopIteration

    def __enter__(self) -> "EventIterator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
