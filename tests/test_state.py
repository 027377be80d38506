"""Tests for the login state machine."""

from __future__ import annotations

import pytest

from vtgreet.state import Inputing, LoggingIn, LoginStateMachine, Validating


@pytest.fixture
def submits() -> list[str]:
    return []


@pytest.fixture
def machine(clock, submits) -> LoginStateMachine:
    return LoginStateMachine(4, submits.append, clock=clock)


def type_text(machine: LoginStateMachine, text: str) -> None:
    for char in text:
        machine.type_char(char)


class TestInputing:
    def test_starts_empty(self, machine) -> None:
        assert machine.state == Inputing()

    def test_buffer_never_exceeds_required_length(self, machine) -> None:
        type_text(machine, "abcdefgh12345")
        assert machine.state.partial_input == "abcd"

    def test_non_printable_characters_are_ignored(self, machine) -> None:
        type_text(machine, "a\tb\x1b")
        machine.type_char("xy")
        assert machine.state.partial_input == "ab"

    def test_backspace_removes_last_character(self, machine) -> None:
        type_text(machine, "abc")
        machine.backspace()
        assert machine.state.partial_input == "ab"

    def test_backspace_on_empty_buffer_is_noop(self, machine) -> None:
        machine.backspace()
        assert machine.state == Inputing()

    def test_repeated_backspace_does_not_underflow(self, machine) -> None:
        type_text(machine, "ab")
        for _ in range(5):
            machine.backspace()
        assert machine.state.partial_input == ""

    def test_short_enter_arms_short_flash_without_submit(self, machine, clock, submits) -> None:
        type_text(machine, "ab")
        clock.now = 3.0
        machine.enter()
        assert submits == []
        assert machine.state == Inputing("ab", flash_start=3.0, flash_duration=0.5)

    def test_short_enter_rearms_flash(self, machine, clock) -> None:
        machine.enter()
        clock.now = 0.3
        machine.enter()
        assert machine.state.flash_start == 0.3
        assert machine.state.flash_duration == 0.5

    def test_full_enter_submits_once_and_validates(self, machine, clock, submits) -> None:
        type_text(machine, "ab12")
        clock.now = 1.5
        machine.enter()
        assert submits == ["ab12"]
        assert machine.state == Validating(start_time=1.5, finished=False)

    def test_transitions_build_new_state_objects(self, machine) -> None:
        before = machine.state
        machine.type_char("a")
        assert machine.state is not before
        assert before.partial_input == ""


class TestValidating:
    @pytest.fixture
    def validating(self, machine, submits) -> LoginStateMachine:
        type_text(machine, "ab12")
        machine.enter()
        return machine

    def test_input_is_ignored_while_validating(self, validating, submits) -> None:
        validating.type_char("x")
        validating.backspace()
        validating.enter()
        validating.enter()
        assert submits == ["ab12"]
        assert isinstance(validating.state, Validating)

    def test_fast_failure_waits_for_minimum_duration(self, validating, clock) -> None:
        clock.now = 0.2
        validating.auth_finished(False)
        assert validating.state == Validating(start_time=0.0, finished=True, succeeded=False)

        clock.now = 1.99
        validating.update()
        assert isinstance(validating.state, Validating)

        clock.now = 2.0
        validating.update()
        assert validating.state == Inputing("", flash_start=2.0, flash_duration=2.0)

    def test_slow_failure_transitions_when_result_arrives(self, validating, clock) -> None:
        clock.now = 2.4
        validating.update()
        assert isinstance(validating.state, Validating)

        clock.now = 2.5
        validating.auth_finished(False)
        state = validating.state
        assert isinstance(state, Inputing)
        assert state.partial_input == ""
        assert state.flash_start == 2.5
        assert state.flash_duration == 2.0

    def test_fast_success_logs_in_at_duration_floor(self, validating, clock) -> None:
        clock.now = 1.0
        validating.auth_finished(True)
        assert isinstance(validating.state, Validating)

        clock.now = 2.0
        validating.update()
        assert validating.state == LoggingIn(start_time=2.0)

    def test_no_transition_without_result(self, validating, clock) -> None:
        clock.now = 60.0
        validating.update()
        assert validating.state == Validating(start_time=0.0)

    def test_second_result_is_ignored(self, validating, clock) -> None:
        clock.now = 0.5
        validating.auth_finished(False)
        validating.auth_finished(True)
        assert validating.state.succeeded is False

    def test_new_attempt_possible_after_failure(self, validating, clock, submits) -> None:
        clock.now = 2.0
        validating.auth_finished(False)
        type_text(validating, "9999")
        validating.enter()
        assert submits == ["ab12", "9999"]


class TestLoggingIn:
    def test_logging_in_is_terminal(self, machine, clock, submits) -> None:
        type_text(machine, "ab12")
        machine.enter()
        clock.now = 2.0
        machine.auth_finished(True)
        logged_in = machine.state
        assert isinstance(logged_in, LoggingIn)

        type_text(machine, "1234")
        machine.backspace()
        machine.enter()
        machine.auth_finished(False)
        clock.now = 10.0
        machine.update()
        assert machine.state is logged_in
        assert submits == ["ab12"]

    def test_result_outside_validation_is_ignored(self, machine) -> None:
        machine.auth_finished(True)
        assert machine.state == Inputing()


class TestFlashLevel:
    def test_no_flash_by_default(self, machine) -> None:
        assert machine.flash_level(0.0) == 0.0

    def test_flash_fades_over_duration(self, machine, clock) -> None:
        clock.now = 1.0
        machine.enter()
        assert machine.flash_level(1.0) == pytest.approx(1.0)
        assert machine.flash_level(1.25) == pytest.approx(0.5)
        assert machine.flash_level(1.5) == 0.0
