"""
Per-frame event dispatch.

The GTK front end pushes input events and calls tick() once per frame.
Authentication runs on one short-lived worker thread per submit, which
posts exactly one LoginResult to a bounded queue. tick() drains that
queue without blocking, so all state machine access stays on the UI thread.
"""

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable

from vtgreet.config import GreeterConfig
from vtgreet.errors import AuthError, GreeterFatal
from vtgreet.pam import Authenticator
from vtgreet.session import SessionProcess, start_user_session
from vtgreet.state import LoggingIn, LoginStateMachine

log = logging.getLogger("vtgreet.dispatch")

RESULT_QUEUE_SIZE = 4


# ---------------------------------------------------------------------------
# Input events
# ---------------------------------------------------------------------------

class Key(enum.Enum):
    ENTER = "enter"
    BACKSPACE = "backspace"
    ESCAPE = "escape"


@dataclass(frozen=True)
class KeyPressed:
    key: Key


@dataclass(frozen=True)
class CharTyped:
    char: str


@dataclass(frozen=True)
class CloseRequested:
    pass


# ---------------------------------------------------------------------------
# Cross-thread messages
# ---------------------------------------------------------------------------

@dataclass
class LoginResult:
    success: bool
    username: str
    authenticator: Authenticator | None = None


@dataclass
class SessionStart:
    username: str
    authenticator: Authenticator | None


def run_attempt(
    service: str,
    username: str,
    password: str,
    results: queue.Queue,
    create: Callable[[str], Authenticator] = Authenticator.create,
) -> None:
    """Worker thread body. Always posts exactly one LoginResult."""
    try:
        authenticator = create(service)
        authenticator.set_username(username).set_password(password)
        authenticator.authenticate_and_open_session()
    except AuthError as e:
        log.warning(f"Authentication failed for {username}: {e}")
        results.put(LoginResult(False, username))
        return
    except Exception:
        log.exception(f"Authentication crashed for {username}")
        results.put(LoginResult(False, username))
        return
    results.put(LoginResult(True, username, authenticator))


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class EventDispatcher:
    def __init__(
        self,
        config: GreeterConfig,
        clock: Callable[[], float] = time.monotonic,
        start_session: Callable[..., SessionProcess] = start_user_session,
        create_authenticator: Callable[[str], Authenticator] = Authenticator.create,
    ):
        self.config = config
        self.results: queue.Queue = queue.Queue(maxsize=RESULT_QUEUE_SIZE)
        self.machine = LoginStateMachine(
            config.pin_length,
            self._dispatch_attempt,
            clock=clock,
            short_flash=config.short_flash,
            long_flash=config.long_flash,
            min_validating=config.min_validating,
        )
        self._start_session = start_session
        self._create_authenticator = create_authenticator
        self._events: list = []
        self.running = True
        self.session: SessionProcess | None = None
        self.fatal: GreeterFatal | None = None
        # Successful login waiting for LoggingIn, then for its start timer
        self._accepted: LoginResult | None = None
        self._starting: SessionStart | None = None
        self._timer: threading.Timer | None = None

    def push_event(self, event) -> None:
        self._events.append(event)

    def tick(self) -> bool:
        """Process one frame's worth of events. Returns False once the loop should end."""
        if not self.running:
            return False

        events, self._events = self._events, []
        for event in events:
            self._handle_event(event)
            if not self.running:
                return False

        while self.running:
            try:
                message = self.results.get_nowait()
            except queue.Empty:
                break
            self._handle_message(message)

        self.machine.update()
        self._arm_session_start()
        return self.running

    def request_exit(self, reason: str) -> None:
        if self.running:
            log.info(f"Leaving greeter loop: {reason}")
        self.running = False
        self._release_unstarted()

    def _handle_event(self, event) -> None:
        if isinstance(event, CloseRequested):
            self.request_exit("window closed")
        elif isinstance(event, KeyPressed):
            if event.key is Key.ESCAPE:
                self.request_exit("escape pressed")
            elif event.key is Key.ENTER:
                self.machine.enter()
            elif event.key is Key.BACKSPACE:
                self.machine.backspace()
        elif isinstance(event, CharTyped):
            self.machine.type_char(event.char)

    def _handle_message(self, message) -> None:
        if isinstance(message, LoginResult):
            self.machine.auth_finished(message.success)
            if message.success:
                self._accepted = message
        elif isinstance(message, SessionStart):
            self._starting = None
            self._timer = None
            try:
                self.session = self._start_session(self.config, message.username, message.authenticator)
            except GreeterFatal as e:
                self.fatal = e
                if message.authenticator is not None:
                    message.authenticator.close_session()
            self.request_exit("session started" if self.fatal is None else "session start failed")

    def _arm_session_start(self) -> None:
        """Schedule SessionStart once the machine has reached LoggingIn."""
        if self._accepted is None or not isinstance(self.machine.state, LoggingIn):
            return
        accepted, self._accepted = self._accepted, None
        self._starting = SessionStart(accepted.username, accepted.authenticator)
        self._timer = threading.Timer(
            self.config.session_start_delay,
            self.results.put,
            args=(self._starting,),
        )
        self._timer.daemon = True
        self._timer.start()
        log.debug(f"Session start in {self.config.session_start_delay}s")

    def _release_unstarted(self) -> None:
        """Close PAM sessions of successful logins that will never get a session."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        pending = [self._accepted, self._starting]
        self._accepted = self._starting = None
        while True:
            try:
                pending.append(self.results.get_nowait())
            except queue.Empty:
                break

        # A fired timer leaves the same SessionStart in the queue too
        closed = set()
        for message in pending:
            authenticator = getattr(message, "authenticator", None)
            if authenticator is None or id(authenticator) in closed:
                continue
            closed.add(id(authenticator))
            log.info(f"Closing unused PAM session for {message.username}")
            authenticator.close_session()

    def _dispatch_attempt(self, password: str) -> None:
        worker = threading.Thread(
            target=run_attempt,
            args=(self.config.pam_service, self.config.username, password, self.results),
            kwargs={"create": self._create_authenticator},
            name="vtgreet-auth",
            daemon=True,
        )
        worker.start()
