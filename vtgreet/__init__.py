"""vtgreet — minimal X11 PIN greeter with its own X server."""
