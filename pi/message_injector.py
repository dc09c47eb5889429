"""
Message Injector — joins an open network and broadcasts a greeting.

The greeting is posted, form-encoded, to a short ordered list of paths on the
network's gateway.  Delivery is best effort: status codes are logged, nothing
is validated and no failure propagates.
"""

import logging
import random
import time
from dataclasses import dataclass

import wifi_controller
from wifi_controller import ConnectTimeout, DeliveryFailure, WiFiError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 5.0
REQUEST_TIMEOUT_S = 2.0
ENDPOINT_PACING_S = 0.5

GREETINGS = (
    "Hello from my Tamagotchi!",
    "Virtual pet owner nearby!",
    "My Tamagotchi says hi!",
    "Remember to feed your pets!",
    "90s nostalgia activated!",
    "Pixel pets forever!",
)


@dataclass(frozen=True)
class DeliveryTarget:
    """One gateway path that receives the greeting as a login-style form."""

    path: str

    def url(self, gateway):
        return f"http://{gateway}{self.path}"


DEFAULT_TARGETS = (
    DeliveryTarget("/post"),
    DeliveryTarget("/"),
    DeliveryTarget("/login"),
    DeliveryTarget("/auth"),
)


class MessageInjector:

    def __init__(self, radio=wifi_controller, targets=DEFAULT_TARGETS,
                 connect_timeout=CONNECT_TIMEOUT_S,
                 request_timeout=REQUEST_TIMEOUT_S,
                 pacing=ENDPOINT_PACING_S,
                 sleep=time.sleep, rng=None):
        self.radio = radio
        self.targets = tuple(targets)
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.pacing = pacing
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compose_greeting(self):
        """Pick two adjacent phrases and spread them over the form fields."""
        i = self._rng.randrange(len(GREETINGS))
        first = GREETINGS[i]
        second = GREETINGS[(i + 1) % len(GREETINGS)]
        return {"email": first, "password": second, "username": first}

    def inject(self, candidate, should_continue=None):
        """Deliver a greeting to an open network. Returns True if attempted."""
        if not candidate.is_open:
            logger.debug("Skipping secured network %s", candidate.ssid)
            return False

        logger.info("Sending friendly message to: %s", candidate.ssid)
        try:
            joined = self.radio.sta_join(candidate.ssid, timeout=self.connect_timeout)
        except ConnectTimeout as e:
            logger.warning("Connect timeout: %s", e)
            return False
        except WiFiError as e:
            logger.warning("Join failed for %s: %s", candidate.ssid, e)
            return False

        try:
            gateway = joined.get("gateway", "")
            if not gateway:
                logger.warning("Joined %s but no gateway address", candidate.ssid)
                return False
            self._broadcast(gateway, should_continue)
            return True
        finally:
            self.radio.sta_leave()

    def _broadcast(self, gateway, should_continue):
        fields = self.compose_greeting()
        for n, target in enumerate(self.targets):
            if should_continue is not None and not should_continue():
                logger.info("Broadcast interrupted after %d targets", n)
                return
            if n:
                self._sleep(self.pacing)
            url = target.url(gateway)
            try:
                status = self.radio.http_post_form(url, fields, timeout=self.request_timeout)
            except DeliveryFailure as e:
                logger.warning("Delivery failure: %s", e)
                continue
            logger.info("Sent friendly message to %s - Response: %d", url, status)
            if not 200 <= status < 300:
                logger.warning("Delivery failure: %s answered %d", url, status)
