"""
Portal Controller — the scan → inject | host state machine.

The controller is plain synchronous code: ``tick(now)`` runs a whole scan
cycle on the caller's thread.  PortalWorker moves that onto a dedicated
thread so the pet's main loop never stalls on a scan or a join; the main loop
talks to it only through a command queue and published state snapshots.
"""

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from queue import Empty, Queue
from typing import Optional

from message_store import millis
from wifi_controller import ScanUnavailable

logger = logging.getLogger(__name__)

SCAN_INTERVAL_MS = int(os.environ.get("TAMAPORTAL_SCAN_INTERVAL_MS", "30000"))
INJECT_ENABLED = os.environ.get("TAMAPORTAL_INJECT", "1") not in ("0", "false", "no")
CANDIDATE_PACING_S = 1.0
TICK_INTERVAL_S = 0.1


class PortalMode(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    INJECTING = "injecting"
    HOSTING = "hosting"


@dataclass
class PortalState:
    mode: PortalMode = PortalMode.IDLE
    active: bool = False
    last_scan_at: Optional[int] = None  # None: a scan is due now
    hotspot_started: bool = False


class PortalController:
    """Owns PortalState and is the only code that mutates it.

    ``checkpoint`` is called at the safe points of a cycle (after the scan,
    between candidates and endpoints, before falling back to hosting) so a
    pending deactivation can be applied there.  ``listener`` receives a copy
    of the state after every transition.
    """

    def __init__(self, scanner, injector, host, scan_interval=SCAN_INTERVAL_MS,
                 inject_enabled=INJECT_ENABLED, candidate_pacing=CANDIDATE_PACING_S,
                 sleep=time.sleep, listener=None, checkpoint=None):
        self.scanner = scanner
        self.injector = injector
        self.host = host
        self.scan_interval = scan_interval
        self.inject_enabled = inject_enabled
        self.candidate_pacing = candidate_pacing
        self.listener = listener
        self.checkpoint = checkpoint
        self._sleep = sleep
        self.state = PortalState()
        # Bumped on every activation; a cycle only runs for the one it began in.
        self._activation = 0
        self._cycle_activation = 0

    # -- activation --

    def toggle_activation(self):
        """Flip the activation toggle. Returns the new value."""
        if self.state.active:
            self._deactivate()
        else:
            self.state.active = True
            self.state.last_scan_at = None
            self._activation += 1
            logger.info("TamaPortal activated")
            self._notify()
        return self.state.active

    def _deactivate(self):
        self.state.active = False
        self.host.stop()
        self.state.hotspot_started = False
        self.state.mode = PortalMode.IDLE
        logger.info("TamaPortal deactivated")
        self._notify()

    # -- scheduling --

    def scan_due(self, now):
        last = self.state.last_scan_at
        return last is None or now - last >= self.scan_interval

    def tick(self, now):
        """Run a scan cycle if the portal is active and one is due."""
        if not self.state.active or not self.scan_due(now):
            return
        self._cycle_activation = self._activation
        self._scan_cycle()
        if self._cycle_current():
            self.state.last_scan_at = now

    # -- cycle --

    def _scan_cycle(self):
        logger.info("TamaPortal: Scanning for networks...")
        self._set_mode(PortalMode.SCANNING)
        try:
            candidates = self.scanner.scan()
        except ScanUnavailable as e:
            logger.warning("Scan unavailable: %s", e)
            candidates = []
        except Exception:
            logger.exception("Scan failed")
            candidates = []

        if not self._safe_point():
            return

        open_nets = [c for c in candidates if c.is_open]
        if open_nets and not self.inject_enabled:
            logger.info("Injection disabled, ignoring %d open networks", len(open_nets))
            open_nets = []

        if open_nets:
            delivered = self._inject_all(open_nets)
            if not self._cycle_current():
                return
            if delivered:
                self._set_mode(PortalMode.IDLE)
                return
            logger.info("No open network took a greeting, creating TamaPortal hotspot")
        elif candidates:
            logger.info("No open networks found, creating TamaPortal hotspot")
        else:
            logger.info("No networks found, creating TamaPortal hotspot")

        if not self._safe_point():
            return
        self._start_hosting()

    def _inject_all(self, open_nets):
        # One radio: the hotspot has to go before we can join anybody.
        if self.host.is_running:
            self.host.stop()
        self.state.hotspot_started = False
        self._set_mode(PortalMode.INJECTING)

        delivered = False
        for n, candidate in enumerate(open_nets):
            if n:
                self._sleep(self.candidate_pacing)
            if not self._safe_point():
                break
            logger.info("Found open network: %s", candidate.ssid)
            try:
                attempted = self.injector.inject(candidate, should_continue=self._safe_point)
            except Exception:
                logger.exception("Injection into %s failed", candidate.ssid)
                attempted = False
            delivered = delivered or attempted
        return delivered

    def _start_hosting(self):
        self._set_mode(PortalMode.HOSTING)
        try:
            self.host.start()
        except Exception:
            logger.exception("Hotspot start failed")
        started = self.host.is_running
        if started != self.state.hotspot_started:
            self.state.hotspot_started = started
            self._notify()

    # -- helpers --

    def _safe_point(self):
        if self.checkpoint is not None:
            self.checkpoint()
        return self._cycle_current()

    def _cycle_current(self):
        return self.state.active and self._activation == self._cycle_activation

    def _set_mode(self, mode):
        if mode is self.state.mode:
            return
        logger.info("Portal mode: %s -> %s", self.state.mode.value, mode.value)
        self.state.mode = mode
        self._notify()

    def _notify(self):
        if self.listener is not None:
            self.listener(replace(self.state))


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

_TOGGLE = "toggle"


class PortalWorker:
    """Runs a PortalController on its own thread.

    The main loop is the single producer of commands and the single consumer
    of snapshots; the worker thread is the only one touching the controller.
    """

    def __init__(self, controller, tick_interval=TICK_INTERVAL_S, clock=millis):
        self.controller = controller
        self.tick_interval = tick_interval
        self.clock = clock
        self._commands = Queue()
        self._snapshot_lock = threading.Lock()
        self._snapshot = replace(controller.state)
        self._shutdown = threading.Event()
        self._thread = None
        controller.checkpoint = self._drain_commands
        controller.listener = self._publish

    # -- main-loop side --

    def request_toggle(self):
        self._commands.put(_TOGGLE)

    def snapshot(self):
        """Latest published PortalState (a copy)."""
        with self._snapshot_lock:
            return replace(self._snapshot)

    def start(self):
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="portal-worker")
        self._thread.start()

    def stop(self, timeout=15.0):
        """Stop the worker thread. Returns False if it is still running."""
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Portal worker did not stop within %.0fs", timeout)
                return False
            self._thread = None
        return True

    # -- worker side --

    def run_once(self):
        """Apply pending commands, tick once and publish the result."""
        self._drain_commands()
        try:
            self.controller.tick(self.clock())
        except Exception:
            logger.exception("Portal tick failed")
        self._publish(replace(self.controller.state))

    def _run(self):
        logger.info("Portal worker started")
        while not self._shutdown.is_set():
            self.run_once()
            self._shutdown.wait(self.tick_interval)
        logger.info("Portal worker stopped")

    def _drain_commands(self):
        while True:
            try:
                cmd = self._commands.get_nowait()
            except Empty:
                return
            if cmd == _TOGGLE:
                self.controller.toggle_activation()

    def _publish(self, state):
        with self._snapshot_lock:
            self._snapshot = state
