"""GPIO button watcher — turns falling edges into portal toggle/clear signals."""

import logging
import os
import threading
from datetime import timedelta

import gpiod
from gpiod.line import Bias, Direction, Edge

logger = logging.getLogger(__name__)

GPIO_CHIP = os.environ.get("TAMAPORTAL_GPIO_CHIP", "/dev/gpiochip0")
DEBOUNCE = timedelta(milliseconds=30)
POLL_TIMEOUT = timedelta(milliseconds=500)


def _pin_from_env(name):
    value = os.environ.get(name, "").strip()
    return int(value) if value else None


TOGGLE_PIN = _pin_from_env("TAMAPORTAL_TOGGLE_PIN")
CLEAR_PIN = _pin_from_env("TAMAPORTAL_CLEAR_PIN")


class ButtonWatcher:
    """Watches active-low buttons and calls a handler per press.

    handlers maps BCM pin -> zero-argument callable.
    """

    def __init__(self, handlers, chip_path=GPIO_CHIP):
        self.handlers = dict(handlers)
        self.chip_path = chip_path
        self._shutdown = threading.Event()
        self._thread = None

    def start(self):
        if not self.handlers:
            logger.info("No buttons configured")
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="buttons")
        self._thread.start()

    def stop(self):
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def _run(self):
        settings = gpiod.LineSettings(
            direction=Direction.INPUT,
            bias=Bias.PULL_UP,
            edge_detection=Edge.FALLING,
            debounce_period=DEBOUNCE,
        )
        try:
            request = gpiod.request_lines(
                self.chip_path,
                consumer="tamaportal",
                config={tuple(self.handlers): settings},
            )
        except OSError as e:
            logger.error("Could not request GPIO lines %s on %s: %s",
                         sorted(self.handlers), self.chip_path, e)
            return

        logger.info("Watching buttons on GPIO %s", sorted(self.handlers))
        with request:
            while not self._shutdown.is_set():
                if not request.wait_edge_events(POLL_TIMEOUT):
                    continue
                for event in request.read_edge_events():
                    handler = self.handlers.get(event.line_offset)
                    if handler is None:
                        continue
                    logger.debug("Button on GPIO%d pressed", event.line_offset)
                    try:
                        handler()
                    except Exception:
                        logger.exception("Button handler for GPIO%d failed",
                                         event.line_offset)
