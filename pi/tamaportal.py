#!/usr/bin/env python3
"""
TamaPortal daemon — proximity messaging for the virtual pet.

Wires the radio, the scan/inject/host state machine and the inbox together,
runs the state machine on its own worker thread and polls it every frame the
way the pet's display loop does.

Configuration is taken from the environment (see wifi_controller,
portal_controller, portal_host, message_store and buttons for the knobs).
"""

import logging
import os
import signal
import sys
import threading

import wifi_controller
from message_injector import MessageInjector
from message_store import MessageStore, overlay_lines
from network_scanner import NetworkScanner
from portal_controller import PortalController, PortalWorker
from portal_host import PortalHost

logger = logging.getLogger("tamaportal")

LOG_LEVEL = os.environ.get("TAMAPORTAL_LOG_LEVEL", "INFO").upper()
START_ACTIVE = os.environ.get("TAMAPORTAL_ACTIVE", "0") in ("1", "true", "yes")
FRAME_INTERVAL_S = 0.1


def render_overlay(mode, text):
    """Display hook: the real screen draws these two lines over the pet."""
    if text:
        line1, line2 = overlay_lines(text)
        logger.info("overlay [%s] %s | %s", mode.value, line1, line2)
    else:
        logger.info("overlay [%s] cleared", mode.value)


def build(radio=wifi_controller):
    """Create the object graph. Returns (store, host, worker)."""
    store = MessageStore()
    host = PortalHost(store, radio=radio)
    controller = PortalController(
        NetworkScanner(radio),
        MessageInjector(radio),
        host,
    )
    worker = PortalWorker(controller)
    return store, host, worker


def _start_buttons(worker, store):
    if not (os.environ.get("TAMAPORTAL_TOGGLE_PIN") or os.environ.get("TAMAPORTAL_CLEAR_PIN")):
        logger.info("No buttons configured")
        return None
    from buttons import CLEAR_PIN, TOGGLE_PIN, ButtonWatcher

    handlers = {}
    if TOGGLE_PIN is not None:
        handlers[TOGGLE_PIN] = worker.request_toggle
    if CLEAR_PIN is not None:
        handlers[CLEAR_PIN] = store.clear
    watcher = ButtonWatcher(handlers)
    watcher.start()
    return watcher


def stop_all(watcher, worker, host, radio=wifi_controller):
    """Tear down in reverse start order.

    The hotspot belongs to the worker thread; if that thread is stuck it is
    left alone and only the radio is shut down.
    """
    if watcher is not None:
        watcher.stop()
    if worker.stop():
        host.stop()
    else:
        logger.warning("Portal worker still busy, skipping hotspot teardown")
    radio.shutdown()


def main():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    store, host, worker = build()
    shutdown = threading.Event()

    def _on_signal(signum, frame):
        shutdown.set()

    signal.signal(signal.SIGTERM, _on_signal)

    watcher = _start_buttons(worker, store)
    if START_ACTIVE:
        worker.request_toggle()
    worker.start()
    logger.info("TamaPortal running (active at boot: %s)", START_ACTIVE)

    shown = (None, None)
    try:
        while not shutdown.is_set():
            state = worker.snapshot()
            frame = (state.mode, store.peek())
            if frame != shown:
                render_overlay(*frame)
                shown = frame
            shutdown.wait(FRAME_INTERVAL_S)
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("TamaPortal shutting down")
        stop_all(watcher, worker, host)
    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
