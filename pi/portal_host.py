"""
Portal Host — open SoftAP, wildcard DNS and the message form.

Anyone joining the hotspot has every DNS name resolved to us by dnsmasq, so
whatever page they try to open lands on the form served here.  An accepted
submission is written to the MessageStore and shown on the pet's screen.
"""

import http.server
import logging
import os
import random
import threading
from urllib.parse import parse_qs, urlparse

import wifi_controller
from wifi_controller import WiFiError

logger = logging.getLogger(__name__)

HTTP_PORT = int(os.environ.get("TAMAPORTAL_HTTP_PORT", "80"))
SSID_PREFIX = os.environ.get("TAMAPORTAL_SSID_PREFIX", "TamaPortal-")
MAX_FORM_BYTES = 4096

_STYLE = (
    "body{background:#000080;color:#00FFFF;font-family:Arial;text-align:center;margin:50px;}"
    "h1{color:#FF00FF;font-size:28px;}h2{color:#FFFF00;font-size:20px;}"
    "h1.ok{color:#00FF00;}"
    "textarea{width:300px;height:60px;font-size:16px;}"
    "input[type=submit]{background:#FF00FF;color:white;padding:10px 20px;font-size:16px;border:none;}"
    "a{color:#FFFF00;}"
)

FORM_PAGE = f"""<!DOCTYPE html>
<html><head><meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>TamaPortal</title><style>{_STYLE}</style></head>
<body>
<h1>TamaPortal</h1>
<h2>Send a message to my virtual pet!</h2>
<p>Your message will appear on my Tamagotchi screen!</p>
<form action="/message" method="post">
<textarea name="msg" maxlength="100" placeholder="Type your friendly message here (2 lines max)..."></textarea><br><br>
<input type="submit" value="SEND TO TAMAGOTCHI">
</form>
</body></html>
"""

THANKS_PAGE = f"""<!DOCTYPE html>
<html><head><meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>TamaPortal</title><style>{_STYLE}</style></head>
<body>
<h1 class="ok">Message sent to Tamagotchi!</h1>
<p>Your message has been delivered to my virtual pet.</p>
<p><a href="/">Send another message</a></p>
</body></html>
"""


class PortalHTTPServer(http.server.ThreadingHTTPServer):
    """HTTP server that knows which PortalHost it serves."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, host):
        self.portal = host
        super().__init__(server_address, PortalRequestHandler)


class PortalRequestHandler(http.server.BaseHTTPRequestHandler):

    server_version = "TamaPortal"

    def log_message(self, fmt, *args):
        logger.debug("%s %s", self.address_string(), fmt % args)

    # -- helpers --

    def _send_html(self, page, status=200):
        body = page.encode("utf-8")
        try:
            self.send_response(status)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.send_header("Cache-Control", "no-store")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        except BrokenPipeError:
            pass  # Client disconnected before reading response

    def _redirect_home(self):
        try:
            self.send_response(302)
            self.send_header("Location", "/")
            self.send_header("Cache-Control", "no-store")
            self.send_header("Content-Length", "0")
            self.end_headers()
        except BrokenPipeError:
            pass

    def _read_form(self):
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            length = 0
        length = max(0, min(length, MAX_FORM_BYTES))
        raw = self.rfile.read(length).decode("utf-8", errors="replace") if length else ""
        return parse_qs(raw, keep_blank_values=True)

    # -- routes --

    def do_GET(self):
        path = urlparse(self.path).path
        if path == "/":
            self._send_html(FORM_PAGE)
        else:
            self._redirect_home()

    def do_POST(self):
        path = urlparse(self.path).path
        if path == "/message":
            self._handle_message()
        else:
            self._read_form()
            self._redirect_home()

    def do_HEAD(self):
        if urlparse(self.path).path != "/":
            self._redirect_home()
            return
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Cache-Control", "no-store")
        self.end_headers()

    do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _redirect_home

    # -- handlers --

    def _handle_message(self):
        form = self._read_form()
        msg = form.get("msg", [""])[0]
        if not msg.strip():
            logger.info("Empty submission from %s ignored", self.address_string())
            self._redirect_home()
            return
        self.server.portal.store.submit(msg)
        self._send_html(THANKS_PAGE)


class PortalHost:
    """Owns the hotspot, its wildcard DNS and the HTTP form server."""

    def __init__(self, store, radio=wifi_controller, http_port=HTTP_PORT,
                 bind_address="", ssid_prefix=SSID_PREFIX, rng=None):
        self.store = store
        self.radio = radio
        self.http_port = http_port
        self.bind_address = bind_address
        self.ssid_prefix = ssid_prefix
        self._rng = rng or random.Random()
        self._httpd = None
        self._thread = None
        self._ap_up = False
        self.ssid = ""

    @property
    def is_running(self):
        return self._httpd is not None

    @property
    def server_address(self):
        """(host, port) the HTTP server actually listens on."""
        if self._httpd is None:
            return None
        return self._httpd.server_address[:2]

    def start(self):
        """Bring up AP, DNS and HTTP. Returns False if nothing was started."""
        if self.is_running:
            logger.debug("Hotspot already active")
            return False

        ssid = f"{self.ssid_prefix}{self._rng.randint(1000, 9999)}"
        logger.info("Creating TamaPortal hotspot %s", ssid)
        try:
            self.radio.ap_start(ssid, wildcard_dns=True)
        except WiFiError as e:
            logger.error("Hotspot failed to start: %s", e)
            return False
        self._ap_up = True
        self.ssid = ssid

        try:
            self._httpd = PortalHTTPServer((self.bind_address, self.http_port), self)
        except OSError as e:
            logger.error("HTTP server failed to bind port %d: %s", self.http_port, e)
            self._stop_radio()
            return False

        self._thread = threading.Thread(
            target=self._httpd.serve_forever, daemon=True, name="portal-http",
        )
        self._thread.start()
        logger.info("TamaPortal hotspot created: ssid=%s http=%s:%d",
                    ssid, *self.server_address)
        return True

    def stop(self):
        """Tear down HTTP, DNS and AP. Returns False if already stopped."""
        if not self.is_running and not self._ap_up:
            logger.debug("Hotspot already stopped")
            return False

        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._stop_radio()
        logger.info("TamaPortal hotspot stopped")
        return True

    def _stop_radio(self):
        if self._ap_up:
            self.radio.ap_stop()
        self._ap_up = False
        self.ssid = ""
