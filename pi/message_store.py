"""Single-slot inbox for messages submitted through the portal."""

import logging
import os
import threading
import time

logger = logging.getLogger(__name__)

MAX_MESSAGE_LEN = 100
DISPLAY_DURATION_MS = int(os.environ.get("TAMAPORTAL_DISPLAY_MS", "5000"))

OVERLAY_LINE_WIDTH = 30
OVERLAY_LINES = 2


def millis():
    """Monotonic clock in milliseconds."""
    return int(time.monotonic() * 1000)


def sanitize(raw_text):
    """Truncate to MAX_MESSAGE_LEN characters, then escape angle brackets."""
    text = raw_text[:MAX_MESSAGE_LEN]
    return text.replace("<", "&lt;").replace(">", "&gt;")


def overlay_lines(text):
    """Wrap text for the two-line, 30-column screen overlay."""
    return [
        text[i * OVERLAY_LINE_WIDTH:(i + 1) * OVERLAY_LINE_WIDTH]
        for i in range(OVERLAY_LINES)
    ]


class MessageStore:
    """Holds at most one message; a new submission overwrites the old one.

    Expiry is lazy: a message is visible while
    ``now - received_at < display_duration`` and is cleared by the first
    ``peek()`` that finds it expired.
    """

    def __init__(self, display_duration=DISPLAY_DURATION_MS, clock=millis):
        self.display_duration = display_duration
        self._clock = clock
        self._lock = threading.Lock()
        self._text = ""
        self._received_at = 0

    @property
    def text(self):
        with self._lock:
            return self._text

    @property
    def received_at(self):
        with self._lock:
            return self._received_at

    def submit(self, raw_text, now=None):
        """Store a new message and return the sanitized text."""
        text = sanitize(raw_text)
        if now is None:
            now = self._clock()
        with self._lock:
            self._text = text
            self._received_at = now
        logger.info("Message received: %s", text)
        return text

    def peek(self, now=None):
        """Return the message text while visible, else None."""
        if now is None:
            now = self._clock()
        with self._lock:
            if not self._text:
                return None
            if now - self._received_at < self.display_duration:
                return self._text
            self._text = ""
        logger.debug("Message expired")
        return None

    def clear(self):
        with self._lock:
            had_message = bool(self._text)
            self._text = ""
        if had_message:
            logger.info("Message cleared")
