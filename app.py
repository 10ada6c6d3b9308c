"""Root entrypoint for tools that look for an `app` in `app.py`."""

from bookingcurve.api import app  # noqa: F401
