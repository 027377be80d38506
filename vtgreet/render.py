"""
cairo drawing for the greeter window.

One outlined box per PIN slot, filled for each typed character. The box
borders flash red after a rejected or too-short submit. A rotating arc
shows a running validation and a growing circle covers the screen while
the session starts.
"""

import math

from vtgreet.state import Inputing, LoggingIn, LoginStateMachine, Validating

BACKGROUND = (0.0, 0.0, 0.0)
FOREGROUND = (1.0, 1.0, 1.0)
FLASH = (0.85, 0.15, 0.15)

MAX_BOX = 80.0
LINE_WIDTH = 3.0
SPINNER_SPEED = 0.8  # turns per second
LOGIN_GROW = 0.8  # seconds until the circle covers the screen


def _mix(a, b, t):
    return tuple(x + (y - x) * t for x, y in zip(a, b))


def draw_frame(cr, width: int, height: int, machine: LoginStateMachine, now: float) -> None:
    cr.set_source_rgb(*BACKGROUND)
    cr.paint()

    state = machine.state
    slots = machine.required_length
    box = min(MAX_BOX, width / (slots * 1.5 + 1))
    gap = box * 0.5
    row = slots * box + (slots - 1) * gap
    x0 = (width - row) / 2
    y0 = (height - box) / 2

    if isinstance(state, Inputing):
        filled = len(state.partial_input)
    else:
        filled = slots
    border = _mix(FOREGROUND, FLASH, machine.flash_level(now))

    cr.set_line_width(LINE_WIDTH)
    for i in range(slots):
        x = x0 + i * (box + gap)
        cr.rectangle(x, y0, box, box)
        if i < filled:
            cr.set_source_rgb(*FOREGROUND)
            cr.fill_preserve()
        cr.set_source_rgb(*border)
        cr.stroke()

    # baseline under the row
    cr.set_source_rgb(*border)
    cr.move_to(x0, y0 + box * 1.4)
    cr.line_to(x0 + row, y0 + box * 1.4)
    cr.stroke()

    if isinstance(state, Validating):
        _draw_spinner(cr, width / 2, y0 + box * 2.4, box * 0.4, now - state.start_time)
    elif isinstance(state, LoggingIn):
        _draw_login(cr, width, height, now - state.start_time)


def _draw_spinner(cr, cx: float, cy: float, radius: float, elapsed: float) -> None:
    angle = elapsed * SPINNER_SPEED * 2 * math.pi
    cr.set_source_rgb(*FOREGROUND)
    cr.set_line_width(LINE_WIDTH)
    cr.new_sub_path()
    cr.arc(cx, cy, radius, angle, angle + math.pi * 1.2)
    cr.stroke()


def _draw_login(cr, width: int, height: int, elapsed: float) -> None:
    progress = min(1.0, max(0.0, elapsed / LOGIN_GROW))
    radius = progress * math.hypot(width, height) / 2
    cr.set_source_rgb(*FOREGROUND)
    cr.new_sub_path()
    cr.arc(width / 2, height / 2, radius, 0, 2 * math.pi)
    cr.fill()
