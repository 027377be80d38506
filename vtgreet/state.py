"""
Login state machine.

    Inputing --Enter (full)--> Validating --result + min time--> LoggingIn
        ^                          |
        +-------- failure ---------+

Each state is a frozen dataclass; every transition builds a new one.
All methods are called from the UI thread only.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable

log = logging.getLogger("vtgreet.state")


@dataclass(frozen=True)
class Inputing:
    partial_input: str = ""
    flash_start: float | None = None
    flash_duration: float = 0.0


@dataclass(frozen=True)
class Validating:
    start_time: float
    finished: bool = False
    succeeded: bool = False


@dataclass(frozen=True)
class LoggingIn:
    start_time: float


LoginAttemptState = Inputing | Validating | LoggingIn


class LoginStateMachine:
    def __init__(
        self,
        required_length: int,
        on_submit: Callable[[str], None],
        clock: Callable[[], float] = time.monotonic,
        short_flash: float = 0.5,
        long_flash: float = 2.0,
        min_validating: float = 2.0,
    ):
        self.required_length = required_length
        self._on_submit = on_submit
        self._clock = clock
        self.short_flash = short_flash
        self.long_flash = long_flash
        self.min_validating = min_validating
        self.state: LoginAttemptState = Inputing()

    def type_char(self, char: str) -> None:
        state = self.state
        if not isinstance(state, Inputing):
            return
        if len(char) != 1 or not char.isprintable():
            return
        if len(state.partial_input) >= self.required_length:
            return
        self.state = replace(state, partial_input=state.partial_input + char)

    def backspace(self) -> None:
        state = self.state
        if isinstance(state, Inputing) and state.partial_input:
            self.state = replace(state, partial_input=state.partial_input[:-1])

    def enter(self) -> None:
        state = self.state
        if not isinstance(state, Inputing):
            return
        now = self._clock()
        if len(state.partial_input) < self.required_length:
            self.state = replace(state, flash_start=now, flash_duration=self.short_flash)
            return

        log.debug("Submitting credentials")
        self.state = Validating(start_time=now)
        self._on_submit(str(state.partial_input))

    def auth_finished(self, success: bool) -> None:
        state = self.state
        if not isinstance(state, Validating) or state.finished:
            log.warning("Ignoring authentication result outside of validation")
            return
        self.state = replace(state, finished=True, succeeded=success)
        self.update()

    def update(self) -> None:
        """Leave Validating once the result is in and the minimum time has passed."""
        state = self.state
        if not isinstance(state, Validating) or not state.finished:
            return
        now = self._clock()
        if now - state.start_time < self.min_validating:
            return
        if state.succeeded:
            log.info("Login accepted")
            self.state = LoggingIn(start_time=now)
        else:
            log.info("Login rejected")
            self.state = Inputing(flash_start=now, flash_duration=self.long_flash)

    def flash_level(self, now: float) -> float:
        """1.0 right after a flash is armed, fading to 0.0 over its duration."""
        state = self.state
        if not isinstance(state, Inputing) or state.flash_start is None:
            return 0.0
        if state.flash_duration <= 0:
            return 0.0
        elapsed = now - state.flash_start
        if elapsed < 0 or elapsed >= state.flash_duration:
            return 0.0
        return 1.0 - elapsed / state.flash_duration
