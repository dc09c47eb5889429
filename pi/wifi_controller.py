"""
WiFi Controller — drives hostapd, dnsmasq, wpa_supplicant and iw for the portal.

The toy owns a single radio, so it is either an open SoftAP (with dnsmasq
answering every DNS query with our own address) or a station joined to
somebody else's open network.  Never both.
"""

import http.client
import logging
import os
import re
import subprocess
import threading
import time
import urllib.error
import urllib.parse
import urllib.request

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

WLAN_IF = os.environ.get("WIFI_WLAN_IF", "wlan0")
AP_IP = os.environ.get("WIFI_AP_IP", "192.168.4.1")
AP_NETMASK = os.environ.get("WIFI_AP_NETMASK", "255.255.255.0")
DHCP_RANGE_START = os.environ.get("WIFI_DHCP_START", "192.168.4.2")
DHCP_RANGE_END = os.environ.get("WIFI_DHCP_END", "192.168.4.20")
DHCP_LEASE_TIME = "1h"

WORK_DIR = os.environ.get("WIFI_WORK_DIR", "/tmp/tamaportal")
HOSTAPD_CONF = os.path.join(WORK_DIR, "hostapd.conf")
DNSMASQ_CONF = os.path.join(WORK_DIR, "dnsmasq.conf")
DNSMASQ_LEASES = os.path.join(WORK_DIR, "dnsmasq.leases")
WPA_CONF = os.path.join(WORK_DIR, "wpa_supplicant.conf")
WPA_LOG = os.path.join(WORK_DIR, "wpa_supplicant.log")

SCAN_TIMEOUT_S = 15

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WiFiError(RuntimeError):
    """Base class for radio failures."""


class ScanUnavailable(WiFiError):
    """The radio could not produce a scan result."""


class ConnectTimeout(WiFiError):
    """A station join did not reach the associated state in time."""


class DeliveryFailure(WiFiError):
    """An HTTP submission could not be delivered."""


# ---------------------------------------------------------------------------
# Module state
# ---------------------------------------------------------------------------

_lock = threading.Lock()
_ap_active = False
_ap_hostapd_proc = None
_ap_dnsmasq_proc = None

_sta_active = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ensure_work_dir():
    os.makedirs(WORK_DIR, exist_ok=True)


def _kill_proc(proc, timeout=5.0):
    """Terminate a subprocess, SIGKILL if it won't die."""
    if proc is None or proc.poll() is not None:
        return
    try:
        proc.terminate()
    except OSError:
        return
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            proc.kill()
        except OSError:
            pass


def _run(cmd, timeout=10, check=True):
    """Run a command, return stdout."""
    result = subprocess.run(
        cmd, capture_output=True, text=True, timeout=timeout, check=check,
    )
    return result.stdout


def _best_effort(cmd, timeout=5):
    """Run a cleanup command, ignoring any failure."""
    try:
        subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
    except (OSError, subprocess.SubprocessError):
        pass


def _release_wlan():
    """Make sure no stray wpa_supplicant owns the interface, then bounce it."""
    _best_effort(["pkill", "-f", f"wpa_supplicant.*{WLAN_IF}"])
    ctrl_path = f"/var/run/wpa_supplicant/{WLAN_IF}"
    try:
        os.remove(ctrl_path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Could not remove %s", ctrl_path)
    _best_effort(["ip", "link", "set", WLAN_IF, "down"])
    time.sleep(0.2)
    _best_effort(["ip", "link", "set", WLAN_IF, "up"])


def _flush_addr():
    """Remove all IP addresses from the interface."""
    _best_effort(["ip", "addr", "flush", "dev", WLAN_IF])


def _prefix_len(netmask):
    return sum(bin(int(octet)).count("1") for octet in netmask.split("."))


# ---------------------------------------------------------------------------
# Config rendering
# ---------------------------------------------------------------------------

def hostapd_config(ssid, channel=6):
    """Render an hostapd.conf for an open (unencrypted) SoftAP."""
    lines = [
        f"interface={WLAN_IF}",
        "driver=nl80211",
        f"ssid={ssid}",
        "hw_mode=g",
        f"channel={channel}",
        "wmm_enabled=0",
        "macaddr_acl=0",
        "auth_algs=1",
        "ignore_broadcast_ssid=0",
        "wpa=0",
    ]
    return "\n".join(lines) + "\n"


def dnsmasq_config(wildcard_dns=True):
    """Render a dnsmasq.conf serving DHCP and, optionally, wildcard DNS.

    With wildcard_dns every name resolves to AP_IP, which funnels any client
    that joins the hotspot to our own HTTP server.
    """
    lines = [
        f"interface={WLAN_IF}",
        "bind-interfaces",
        f"listen-address={AP_IP}",
        f"dhcp-range={DHCP_RANGE_START},{DHCP_RANGE_END},{AP_NETMASK},{DHCP_LEASE_TIME}",
        f"dhcp-option=3,{AP_IP}",
        f"dhcp-option=6,{AP_IP}",
        f"dhcp-leasefile={DNSMASQ_LEASES}",
        "no-resolv",
        "no-hosts",
        "no-daemon",
        "log-dhcp",
    ]
    if wildcard_dns:
        lines += [
            "port=53",
            f"address=/#/{AP_IP}",
        ]
    else:
        lines.append("port=0")
    return "\n".join(lines) + "\n"


def wpa_config(ssid):
    """Render a wpa_supplicant.conf for an open network."""
    escaped = ssid.replace("\\", "\\\\").replace('"', '\\"')
    return (
        "ctrl_interface=/var/run/wpa_supplicant\n"
        "network={\n"
        f'    ssid="{escaped}"\n'
        "    key_mgmt=NONE\n"
        "}\n"
    )


# ---------------------------------------------------------------------------
# AP Mode
# ---------------------------------------------------------------------------

def ap_start(ssid, channel=6, wildcard_dns=True):
    """Start an open SoftAP plus dnsmasq. Returns dict with ip."""
    global _ap_active
    global _ap_hostapd_proc, _ap_dnsmasq_proc

    with _lock:
        _stop_all_unlocked()
        _ensure_work_dir()

        with open(HOSTAPD_CONF, "w") as f:
            f.write(hostapd_config(ssid, channel))
        with open(DNSMASQ_CONF, "w") as f:
            f.write(dnsmasq_config(wildcard_dns))

        _release_wlan()
        _flush_addr()
        _best_effort(["ip", "addr", "add", f"{AP_IP}/{_prefix_len(AP_NETMASK)}", "dev", WLAN_IF])
        _best_effort(["ip", "link", "set", WLAN_IF, "up"])

        try:
            _ap_hostapd_proc = subprocess.Popen(
                ["hostapd", HOSTAPD_CONF],
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise WiFiError(f"hostapd could not be launched: {e}") from e
        # hostapd needs a moment before the BSS is up
        time.sleep(1.5)
        if _ap_hostapd_proc.poll() is not None:
            out = _ap_hostapd_proc.stdout.read().decode(errors="replace")
            _ap_hostapd_proc = None
            raise WiFiError(f"hostapd failed to start: {out[:500]}")

        try:
            _ap_dnsmasq_proc = subprocess.Popen(
                ["dnsmasq", "-C", DNSMASQ_CONF],
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            )
        except OSError as e:
            _kill_proc(_ap_hostapd_proc)
            _ap_hostapd_proc = None
            raise WiFiError(f"dnsmasq could not be launched: {e}") from e
        time.sleep(0.5)
        if _ap_dnsmasq_proc.poll() is not None:
            out = _ap_dnsmasq_proc.stdout.read().decode(errors="replace")
            _ap_dnsmasq_proc = None
            _kill_proc(_ap_hostapd_proc)
            _ap_hostapd_proc = None
            raise WiFiError(f"dnsmasq failed to start: {out[:500]}")

        _ap_active = True
        logger.info("AP started: ssid=%s channel=%d ip=%s wildcard_dns=%s",
                    ssid, channel, AP_IP, wildcard_dns)
        return {"ip": AP_IP}


def ap_stop():
    """Stop the SoftAP and its DNS/DHCP server."""
    with _lock:
        _ap_stop_unlocked()


def _ap_stop_unlocked():
    global _ap_active
    global _ap_hostapd_proc, _ap_dnsmasq_proc

    was_active = _ap_active
    _kill_proc(_ap_dnsmasq_proc)
    _ap_dnsmasq_proc = None
    _kill_proc(_ap_hostapd_proc)
    _ap_hostapd_proc = None
    _ap_active = False

    if was_active:
        _flush_addr()
        logger.info("AP stopped")


# ---------------------------------------------------------------------------
# STA Mode
# ---------------------------------------------------------------------------

def _wpa_state():
    try:
        result = subprocess.run(
            ["wpa_cli", "-i", WLAN_IF, "status"],
            capture_output=True, text=True, timeout=3, check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    m = re.search(r"^wpa_state=(\w+)", result.stdout, re.MULTILINE)
    return m.group(1) if m else ""


def _request_dhcp(timeout):
    # dhcpcd (Bookworm) first, then dhclient, then busybox udhcpc
    for cmd in (
        ["/usr/sbin/dhcpcd", "-1", "-4", WLAN_IF],
        ["dhclient", "-1", WLAN_IF],
        ["udhcpc", "-i", WLAN_IF, "-n", "-q"],
    ):
        try:
            _run(cmd, timeout=timeout, check=False)
            return
        except (OSError, subprocess.SubprocessError):
            continue


def _current_ip():
    try:
        out = _run(["ip", "-4", "addr", "show", WLAN_IF], check=False)
    except (OSError, subprocess.SubprocessError):
        return ""
    m = re.search(r"inet (\d+\.\d+\.\d+\.\d+)", out)
    return m.group(1) if m else ""


def _default_gateway():
    try:
        out = _run(["ip", "route", "show", "dev", WLAN_IF], check=False)
    except (OSError, subprocess.SubprocessError):
        return ""
    m = re.search(r"default via (\d+\.\d+\.\d+\.\d+)", out)
    return m.group(1) if m else ""


def sta_join(ssid, timeout=5.0, dhcp_timeout=10.0):
    """Join an open network as a station. Returns dict with ip, gateway.

    timeout bounds the wait for wpa_supplicant to reach COMPLETED; the DHCP
    lease has its own bound.  Raises ConnectTimeout or WiFiError.
    """
    global _sta_active

    with _lock:
        _stop_all_unlocked()
        _ensure_work_dir()

        _release_wlan()
        _flush_addr()

        with open(WPA_CONF, "w") as f:
            f.write(wpa_config(ssid))

        try:
            proc = subprocess.Popen(
                ["wpa_supplicant", "-i", WLAN_IF, "-c", WPA_CONF, "-B", "-f", WPA_LOG],
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            )
            proc.wait(timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            _sta_stop_unlocked()
            raise WiFiError(f"wpa_supplicant could not be started: {e}") from e

        deadline = time.monotonic() + timeout
        connected = False
        while time.monotonic() < deadline:
            if _wpa_state() == "COMPLETED":
                connected = True
                break
            time.sleep(0.1)

        if not connected:
            _sta_stop_unlocked()
            raise ConnectTimeout(f"Failed to connect to '{ssid}' within {timeout}s")

        _request_dhcp(dhcp_timeout)

        ip_addr = ""
        deadline = time.monotonic() + dhcp_timeout
        while time.monotonic() < deadline:
            ip_addr = _current_ip()
            if ip_addr:
                break
            time.sleep(0.5)

        if not ip_addr:
            _sta_stop_unlocked()
            raise WiFiError(f"Connected to '{ssid}' but no IP obtained")

        gateway = _default_gateway()
        _sta_active = True
        logger.info("STA joined: ssid=%s ip=%s gw=%s", ssid, ip_addr, gateway)
        return {"ip": ip_addr, "gateway": gateway}


def sta_leave():
    """Disconnect from the joined network."""
    with _lock:
        _sta_stop_unlocked()


def _sta_stop_unlocked():
    global _sta_active

    was_active = _sta_active
    _best_effort(["pkill", "-f", f"wpa_supplicant.*{WLAN_IF}"])
    ctrl_path = f"/var/run/wpa_supplicant/{WLAN_IF}"
    try:
        os.remove(ctrl_path)
    except OSError:
        pass
    _best_effort(["/usr/sbin/dhcpcd", "--release", WLAN_IF])

    _flush_addr()
    _sta_active = False
    if was_active:
        logger.info("STA disconnected")


# ---------------------------------------------------------------------------
# Combined stop
# ---------------------------------------------------------------------------

def _stop_all_unlocked():
    """Stop both AP and STA (caller holds _lock)."""
    _ap_stop_unlocked()
    _sta_stop_unlocked()


def shutdown():
    """Clean shutdown — stop everything."""
    with _lock:
        _stop_all_unlocked()
    logger.info("WiFi controller shut down")


# ---------------------------------------------------------------------------
# WiFi Scan
# ---------------------------------------------------------------------------

def parse_iw_scan(out):
    """Parse `iw dev <if> scan` output into a list of network dicts.

    Each dict has ssid, rssi and auth (OPEN, WEP, WPA or WPA2).  Hidden
    networks (empty SSID) are dropped.
    """
    networks = []
    current = {}
    for line in out.splitlines():
        line = line.strip()
        if line.startswith("BSS "):
            if current.get("ssid"):
                networks.append(current)
            current = {"ssid": "", "rssi": 0, "auth": "OPEN"}
        elif line.startswith("SSID:"):
            current["ssid"] = line[5:].strip()
        elif line.startswith("signal:"):
            # signal: -45.00 dBm
            m = re.search(r"(-?\d+\.?\d*)", line)
            if m:
                current["rssi"] = int(float(m.group(1)))
        elif line.startswith("capability:") and "Privacy" in line:
            if current.get("auth") == "OPEN":
                current["auth"] = "WEP"
        elif line.startswith("RSN:"):
            current["auth"] = "WPA2"
        elif line.startswith("WPA:"):
            if current.get("auth") != "WPA2":
                current["auth"] = "WPA"

    if current.get("ssid"):
        networks.append(current)

    networks.sort(key=lambda n: n.get("rssi", -100), reverse=True)
    return networks


def scan():
    """Scan for WiFi networks using iw. Returns dict with networks list."""
    _best_effort(["ip", "link", "set", WLAN_IF, "up"])
    try:
        result = subprocess.run(
            ["iw", "dev", WLAN_IF, "scan", "-u"],
            capture_output=True, text=True, timeout=SCAN_TIMEOUT_S, check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ScanUnavailable(f"iw scan timed out after {SCAN_TIMEOUT_S}s") from e
    except OSError as e:
        raise ScanUnavailable(f"iw scan failed: {e}") from e

    if result.returncode != 0:
        raise ScanUnavailable(
            f"iw scan exited {result.returncode}: {result.stderr.strip()[:200]}"
        )
    return {"networks": parse_iw_scan(result.stdout)}


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Report 3xx answers as they are instead of chasing them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


_opener = urllib.request.build_opener(_NoRedirect)


def http_post_form(url, fields, timeout=2.0):
    """POST form-encoded fields. Returns the HTTP status code.

    Redirects are not followed.  Non-2xx answers are returned, not raised;
    transport failures and malformed replies raise DeliveryFailure.
    """
    body = urllib.parse.urlencode(fields).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with _opener.open(req, timeout=timeout) as resp:
            resp.read()
            return resp.status
    except urllib.error.HTTPError as e:
        e.close()
        return e.code
    except urllib.error.URLError as e:
        raise DeliveryFailure(f"POST {url} failed: {e.reason}") from e
    except (http.client.HTTPException, OSError) as e:
        raise DeliveryFailure(f"POST {url} failed: {e!r}") from e
