"""
GTK4 front end for vtgreet.

A fullscreen window with one DrawingArea. Key presses are translated into
dispatcher events; the frame clock's tick callback runs the dispatcher once
per frame and requests a redraw. Import this only after DISPLAY points at
the supervised X server: importing Gtk connects to the display.
"""

import logging
import time

import gi
gi.require_version("Gtk", "4.0")
gi.require_version("Gdk", "4.0")
from gi.repository import Gdk, GLib, Gio, Gtk

from vtgreet import render
from vtgreet.dispatch import CharTyped, CloseRequested, EventDispatcher, Key, KeyPressed

log = logging.getLogger("vtgreet.window")

APPLICATION_ID = "io.vtgreet.Greeter"

KEYS = {
    Gdk.KEY_Return: Key.ENTER,
    Gdk.KEY_KP_Enter: Key.ENTER,
    Gdk.KEY_BackSpace: Key.BACKSPACE,
    Gdk.KEY_Escape: Key.ESCAPE,
}


class GreeterWindow(Gtk.ApplicationWindow):
    def __init__(self, app: Gtk.Application, dispatcher: EventDispatcher):
        super().__init__(application=app)
        self.set_name("vtgreet-window")
        self.set_decorated(False)
        self.fullscreen()
        self._dispatcher = dispatcher

        self._area = Gtk.DrawingArea()
        self._area.set_hexpand(True)
        self._area.set_vexpand(True)
        self._area.set_cursor_from_name("none")
        self._area.set_draw_func(self._on_draw)
        self.set_child(self._area)

        keys = Gtk.EventControllerKey()
        keys.connect("key-pressed", self._on_key_pressed)
        self.add_controller(keys)

        self.connect("close-request", self._on_close_request)
        self._area.add_tick_callback(self._on_tick)

    def _on_key_pressed(self, _ctrl, keyval: int, _keycode: int, _state) -> bool:
        key = KEYS.get(keyval)
        if key is not None:
            self._dispatcher.push_event(KeyPressed(key))
            return True
        codepoint = Gdk.keyval_to_unicode(keyval)
        if codepoint:
            self._dispatcher.push_event(CharTyped(chr(codepoint)))
            return True
        return False

    def _on_close_request(self, _win) -> bool:
        # The dispatcher decides when the loop ends
        self._dispatcher.push_event(CloseRequested())
        return True

    def _on_tick(self, widget, _frame_clock) -> bool:
        running = self._dispatcher.tick()
        widget.queue_draw()
        if not running:
            self.get_application().quit()
            return GLib.SOURCE_REMOVE
        return GLib.SOURCE_CONTINUE

    def _on_draw(self, _area, cr, width: int, height: int) -> None:
        render.draw_frame(cr, width, height, self._dispatcher.machine, time.monotonic())


class GreeterApp(Gtk.Application):
    def __init__(self, dispatcher: EventDispatcher):
        # No session bus at the greeter, so skip uniqueness registration
        super().__init__(
            application_id=APPLICATION_ID,
            flags=Gio.ApplicationFlags.NON_UNIQUE,
        )
        self._dispatcher = dispatcher

    def do_activate(self):
        win = GreeterWindow(self, self._dispatcher)
        win.present()
        log.info("Greeter window shown")


def run_greeter(dispatcher: EventDispatcher) -> int:
    """Run the GTK main loop until the dispatcher ends it."""
    app = GreeterApp(dispatcher)
    return app.run([])
