"""SIP registration session: a single REGISTER transaction over a WebSocket connection."""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol, runtime_checkable

from typing_extensions import Self

from sipwss.exceptions import SIPParseError, SIPProtocolMismatch, SIPTimeout
from sipwss.helpers import slots_dataclass
from sipwss.websocket import TransportListener, WebSocketConnection

from .messages import SIPMessage, SIPMethod
from .register import REGISTER_CSEQ, RegisterBuilder


if TYPE_CHECKING:
    from sipwss.config import RegistrationConfig


__all__ = [
    "RegistrationState",
    "RegistrationOutcome",
    "RegistrationListener",
    "RegistrationSession",
    "run_registration",
]


_logger = logging.getLogger(__name__)


MONITOR_POLL_INTERVAL: float = 1e-2
CLOSE_GRACE_PERIOD: float = 5e-2
DEFAULT_WAIT_GRACE: float = 2.0


class RegistrationState(enum.Enum):
    """States of a :class:`RegistrationSession`."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    REGISTERED = "registered"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in {
            RegistrationState.REGISTERED,
            RegistrationState.FAILED,
            RegistrationState.TIMEOUT,
        }


@slots_dataclass(frozen=True)
class RegistrationOutcome:
    """
    The terminal outcome of a registration attempt.

    :param state: The terminal state: registered, failed or timeout.
    :param status_code: The SIP status code of the REGISTER response, if any.
    :param reason: The SIP reason phrase when registered, otherwise a description
        of the failure.
    :param response: The SIP response that concluded the transaction, if any.
    :param error: The exception describing a timeout, if any.
    """

    state: RegistrationState
    status_code: int | None = None
    reason: str | None = None
    response: SIPMessage | None = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.state == RegistrationState.REGISTERED

    def __str__(self) -> str:
        if self.success:
            return f"registered: {self.status_code} {self.reason}"
        return f"{self.state.value}: {self.reason}"


@runtime_checkable
class RegistrationListener(Protocol):
    """
    Observer of a :class:`RegistrationSession`, e.g. a UI.
    Methods are called from the session event loop thread.
    """

    def on_state_change(self, state: RegistrationState) -> None:
        """The session moved to a new state."""

    def on_outcome(self, outcome: RegistrationOutcome) -> None:
        """The session reached its terminal outcome. Called at most once."""

    def on_log(self, message: str) -> None:
        """A significant event happened during the session."""


ConnectionFactory = Callable[["RegistrationConfig", TransportListener], WebSocketConnection]


async def cancel_task_silent(task: asyncio.Task) -> None:
    """Cancel a task, awaiting it, and ignore the raised :class:`asyncio.CancelledError`."""
    try:
        task.cancel()
        await task
    except asyncio.CancelledError:
        pass


class RegistrationSession:
    """
    Drives a single SIP REGISTER transaction over a WebSocket connection,
    reporting exactly one terminal outcome. The session is the
    :class:`TransportListener` of its connection.

    The session runs its own asyncio event loop in a background thread,
    so :meth:`start` and :meth:`stop` never block on network I/O.
    The outcome is delivered to the listener, and can be awaited with :meth:`wait`.

    After a successful registration the connection is kept open, with keepalive
    pings, until :meth:`stop` is called. Failures and timeouts close it.

    :param config: The registration configuration.
    :param listener: An optional observer of the session events.
    :param builder: The REGISTER builder. If None, one is created from the config.
    :param connection_factory: Callable creating the WebSocket connection.
        Defaults to :meth:`WebSocketConnection.from_config`.
    """

    def __init__(
        self,
        config: RegistrationConfig,
        listener: RegistrationListener | None = None,
        *,
        builder: RegisterBuilder | None = None,
        connection_factory: ConnectionFactory | None = None,
    ):
        self.config: RegistrationConfig = config
        self._listener: RegistrationListener | None = listener
        self.builder: RegisterBuilder = builder or RegisterBuilder.from_config(config)
        self.register_request: str = self.builder.build()
        self._connection_factory: ConnectionFactory = (
            connection_factory or WebSocketConnection.from_config
        )

        self._lock: threading.Lock = threading.Lock()
        self._state: RegistrationState = RegistrationState.IDLE
        self._response_observed: bool = False
        self._outcome: RegistrationOutcome | None = None
        self._outcome_event: threading.Event = threading.Event()
        self._stopped: bool = False

        self._connection: WebSocketConnection | None = None
        self._connect_task: asyncio.Task | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None

        self._event_loop: asyncio.AbstractEventLoop | None = None
        self._event_loop_thread: threading.Thread | None = None
        self._closing_event: threading.Event = threading.Event()

    @property
    def state(self) -> RegistrationState:
        return self._state

    @property
    def outcome(self) -> RegistrationOutcome | None:
        """The terminal outcome, or None if not reached yet."""
        return self._outcome

    @property
    def response_observed(self) -> bool:
        return self._response_observed

    @property
    def connection(self) -> WebSocketConnection | None:
        return self._connection

    @property
    def event_loop(self) -> asyncio.AbstractEventLoop | None:
        """The asyncio event loop used by the session, once started."""
        return self._event_loop

    def start(self) -> None:
        """Start the registration attempt in the background."""
        with self._lock:
            if self._event_loop_thread is not None or self._stopped:
                raise RuntimeError("Registration session already started")
            self._event_loop = asyncio.new_event_loop()
            self._event_loop.set_exception_handler(self._handle_loop_exception)
            self._event_loop_thread = threading.Thread(
                target=self._run_event_loop,
                name=f"{self.__class__.__name__}._run_event_loop-{id(self)}",
                daemon=True,
            )

        self._event_loop.call_soon_threadsafe(self._begin)
        self._event_loop_thread.start()

    def stop(self) -> None:
        """
        Stop the session: cancel the timeout and close the connection.
        No outcome is reported because of stopping, and events still
        in flight are ignored.
        """
        with self._lock:
            self._stopped = True
        self._closing_event.set()

        thread = self._event_loop_thread
        if (
            thread is not None
            and threading.current_thread() is not thread
            and thread.is_alive()
        ):
            thread.join()

    def wait(self, timeout: float | None = None) -> RegistrationOutcome | None:
        """
        Block until the terminal outcome is reached.

        :return: The outcome, or None if ``timeout`` elapsed before it.
        """
        self._outcome_event.wait(timeout)
        return self._outcome

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(
        self,
        exctype: type[BaseException] | None,
        excinst: BaseException | None,
        exctb: TracebackType | None,
    ) -> None:
        self.stop()

    def _run_event_loop(self) -> None:
        assert self._event_loop is not None
        asyncio.set_event_loop(self._event_loop)
        try:
            self._event_loop.run_until_complete(self._async_monitor())
        finally:
            self._event_loop.close()

    async def _async_monitor(self) -> None:
        """Wait for the session to be stopped, then clean everything up."""
        while not self._closing_event.is_set():
            await asyncio.sleep(MONITOR_POLL_INTERVAL)

        self._cancel_timeout()
        if self._connection is not None:
            self._connection.close()
        if self._connect_task is not None and not self._connect_task.done():
            await cancel_task_silent(self._connect_task)
        # let the stream flush the close frame and report the connection lost
        await asyncio.sleep(CLOSE_GRACE_PERIOD)
        assert self._event_loop is not None
        await self._event_loop.shutdown_asyncgens()

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: Mapping[str, Any]
    ) -> None:
        """Handle exceptions in the event loop by logging as error."""
        message: str = f"Exception in event loop: {context['message']}"
        exception = context.get("exception")
        if _logger.getEffectiveLevel() <= logging.DEBUG:
            _logger.exception(message, exc_info=exception)
        else:
            _logger.error(message)

    def _begin(self) -> None:
        if not self._set_state(RegistrationState.CONNECTING):
            return
        assert self._event_loop is not None
        self._log(
            f"Starting registration of {self.builder.aor} via {self.config.ws_url}"
        )
        self._timeout_handle = self._event_loop.call_later(
            self.config.register_timeout, self._on_timeout
        )
        self._connection = self._connection_factory(self.config, self)
        self._connect_task = self._event_loop.create_task(
            self._connection.connect(),
            name=f"{self.__class__.__name__}.connect-{id(self)} task",
        )

    def _log(self, message: str, level: int = logging.INFO) -> None:
        _logger.log(level, message)
        if self._listener is not None:
            self._listener.on_log(message)

    def _set_state(self, state: RegistrationState) -> bool:
        with self._lock:
            if self._stopped or self._state.is_terminal:
                return False
            self._state = state
        if self._listener is not None:
            self._listener.on_state_change(state)
        return True

    def _finish(self, outcome: RegistrationOutcome) -> bool:
        """Transition to a terminal state. Only the first call has any effect."""
        with self._lock:
            if self._stopped or self._state.is_terminal:
                return False
            self._state = outcome.state
            self._outcome = outcome

        self._cancel_timeout()
        if outcome.success:
            self._log(f"REGISTERED: {outcome.status_code} {outcome.reason}")
        else:
            self._log(f"{outcome.state.value.upper()}: {outcome.reason}", logging.WARNING)
        if self._listener is not None:
            self._listener.on_state_change(outcome.state)
            self._listener.on_outcome(outcome)
        self._outcome_event.set()

        if not outcome.success and self._connection is not None:
            self._connection.close()
        return True

    def _fail(
        self,
        reason: str,
        *,
        status_code: int | None = None,
        response: SIPMessage | None = None,
    ) -> bool:
        return self._finish(
            RegistrationOutcome(
                RegistrationState.FAILED,
                status_code=status_code,
                reason=reason,
                response=response,
            )
        )

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        with self._lock:
            if self._response_observed:
                return
        reason: str = f"no SIP response in {self.config.register_timeout:g} seconds"
        self._finish(
            RegistrationOutcome(
                RegistrationState.TIMEOUT, reason=reason, error=SIPTimeout(reason)
            )
        )

    @staticmethod
    def _check_transaction(message: SIPMessage) -> None:
        """
        Check that a message is the response to the outstanding REGISTER.

        :raises SIPProtocolMismatch: If it's not.
        """
        if not message.is_response:
            raise SIPProtocolMismatch(f"not a response: {message.start_line}")
        cseq = message.cseq
        if not SIPMethod.REGISTER.matches(cseq.method):
            raise SIPProtocolMismatch(f"CSeq method is {cseq.method}")
        if cseq.number != REGISTER_CSEQ.number:
            raise SIPProtocolMismatch(f"CSeq number is {cseq.number}")

    def on_open(self) -> None:
        if not self._set_state(RegistrationState.OPEN):
            return
        assert self._connection is not None
        self._log("WebSocket open, sending REGISTER")
        self._log(f"REGISTER request:\n{self.register_request}", logging.DEBUG)
        self._connection.send_text(self.register_request)
        self._connection.start_keepalive(self.config.keepalive_interval)

    def on_message(self, text: str) -> None:
        with self._lock:
            if self._stopped:
                return
            self._response_observed = True
            terminal: bool = self._state.is_terminal

        self._log(f"SIP message received:\n{text}", logging.DEBUG)
        if terminal:
            return

        try:
            message: SIPMessage | None = SIPMessage.parse(text)
        except SIPParseError as exc:
            _logger.debug(f"Error parsing SIP message: {exc}")
            message = None
        if message is None:
            self._fail("SIP parse failed (empty/invalid)")
            return

        try:
            self._check_transaction(message)
        except SIPProtocolMismatch as exc:
            self._log(f"Ignoring non-REGISTER SIP message ({exc}): {message.start_line}")
            return

        status_code: int | None = message.status_code
        if status_code is None:
            self._fail("REGISTER response missing status code", response=message)
        elif status_code == 200:
            self._finish(
                RegistrationOutcome(
                    RegistrationState.REGISTERED,
                    status_code=status_code,
                    reason=message.reason_phrase or "OK",
                    response=message,
                )
            )
        else:
            self._fail(
                f"REGISTER failed: {status_code} {message.reason_phrase}",
                status_code=status_code,
                response=message,
            )

    def on_close(self, code: int | None, reason: str | None) -> None:
        with self._lock:
            if self._stopped:
                return
            observed: bool = self._response_observed
        self._log(f"WebSocket closed: code={code} reason={reason}")
        if not observed:
            self._fail("socket closed before SIP response")
        else:
            # an unrelated SIP message disarms the timeout, so this close must
            # still end the session with an outcome
            self._fail("socket closed before REGISTER response")

    def on_error(self, error: Exception) -> None:
        with self._lock:
            if self._stopped:
                return
        self._fail(f"socket error: {error}")


def run_registration(
    config: RegistrationConfig,
    listener: RegistrationListener | None = None,
    *,
    grace: float = DEFAULT_WAIT_GRACE,
    **session_kwargs: Any,
) -> RegistrationOutcome:
    """
    Run a complete registration attempt, blocking until its outcome,
    then stop the session.

    :param config: The registration configuration.
    :param listener: An optional observer of the session events.
    :param grace: Extra seconds to wait beyond the register timeout.
    :param session_kwargs: Extra arguments for :class:`RegistrationSession`.
    :return: The outcome of the registration.
    """
    wait_timeout: float = config.register_timeout + grace
    with RegistrationSession(config, listener, **session_kwargs) as session:
        outcome = session.wait(wait_timeout)
    if outcome is None:
        reason: str = f"no REGISTER response in {wait_timeout:g} seconds"
        outcome = RegistrationOutcome(
            RegistrationState.TIMEOUT, reason=reason, error=SIPTimeout(reason)
        )
    return outcome
