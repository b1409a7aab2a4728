"""
Gateway authorization dispatcher

Turns a generic authorization command ("give this device N Mbps for T
seconds", or "disconnect it") into the one HTTP call each supported router
vendor understands:

  - mikrotik: RouterOS REST, hotspot active entries
  - unifi:    UniFi controller guest authorization (stamgr)
  - pfsense:  pfSense captive portal API
  - openwrt:  nodogsplash CGI auth/deauth

All vendor calls set the current state rather than increment it, so a
redelivered command is harmless. Any failure raises GatewayDispatchError
and the queue redelivers the command.
"""

import logging

import requests
from django.conf import settings

from .exceptions import GatewayDispatchError
from .models import Gateway, Session
from .session_manager import ACTION_AUTHORIZE, ACTION_DISCONNECT, ACTION_UPDATE

logger = logging.getLogger(__name__)

KBPS_PER_MBPS = 1024


class GatewayAdapter:
    """Base class for one router vendor's authorization protocol."""

    vendor = None

    def __init__(self, gateway: Gateway):
        self.gateway = gateway
        self.base_url = gateway.api_endpoint.rstrip("/")
        self.timeout = settings.GATEWAY_HTTP_TIMEOUT

    def authorize(self, command: dict):
        raise NotImplementedError

    def disconnect(self, command: dict):
        raise NotImplementedError

    def update(self, command: dict):
        # Vendors re-apply limits through the same call used to authorize
        return self.authorize(command)

    def request_options(self) -> dict:
        return {}

    def _send(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        options = self.request_options()
        options.update(kwargs)
        try:
            response = requests.request(
                method,
                url,
                timeout=self.timeout,
                verify=settings.GATEWAY_VERIFY_SSL,
                **options,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout:
            logger.error(f"{self.vendor} gateway {self.gateway.gateway_id} timed out: {method} {url}")
            raise GatewayDispatchError(f"Gateway {self.gateway.gateway_id} timed out")
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.vendor} gateway {self.gateway.gateway_id} call failed: {e}")
            raise GatewayDispatchError(f"Gateway {self.gateway.gateway_id} call failed: {e}")
        return response


class MikroTikAdapter(GatewayAdapter):
    """RouterOS REST API; rate limit as "<N>M/<N>M", uptime in seconds."""

    vendor = "mikrotik"

    def request_options(self):
        return {"auth": (self.gateway.api_username or "admin", self.gateway.shared_secret)}

    def authorize(self, command):
        rate = f"{command['bandwidthMbps']}M"
        payload = {
            "user": command["userId"],
            "address": command["ipAddress"],
            "mac-address": command["macAddress"],
            "uptime": command["sessionTimeout"],
            "rate-limit": f"{rate}/{rate}",
        }
        return self._send("POST", "/rest/ip/hotspot/active", json=payload)

    def disconnect(self, command):
        return self._send(
            "POST",
            "/rest/ip/hotspot/active/remove",
            json={"mac-address": command["macAddress"]},
        )


class UniFiAdapter(GatewayAdapter):
    """UniFi controller; kbps up/down and whole minutes."""

    vendor = "unifi"

    def request_options(self):
        if self.gateway.shared_secret:
            return {"headers": {"X-API-KEY": self.gateway.shared_secret}}
        return {}

    def authorize(self, command):
        kbps = command["bandwidthMbps"] * KBPS_PER_MBPS
        payload = {
            "cmd": "authorize-guest",
            "mac": command["macAddress"].lower(),
            "minutes": max(1, command["sessionTimeout"] // 60),
            "up": kbps,
            "down": kbps,
        }
        return self._send("POST", "/api/s/default/cmd/stamgr", json=payload)

    def disconnect(self, command):
        payload = {"cmd": "unauthorize-guest", "mac": command["macAddress"].lower()}
        return self._send("POST", "/api/s/default/cmd/stamgr", json=payload)


class PfSenseAdapter(GatewayAdapter):
    """pfSense captive portal; kbps up/down and seconds."""

    vendor = "pfsense"

    def request_options(self):
        if self.gateway.shared_secret:
            return {"headers": {"Authorization": self.gateway.shared_secret}}
        return {}

    def authorize(self, command):
        kbps = command["bandwidthMbps"] * KBPS_PER_MBPS
        payload = {
            "action": "authorize",
            "mac": command["macAddress"],
            "ip": command["ipAddress"],
            "bandwidth_up": kbps,
            "bandwidth_down": kbps,
            "timeout": command["sessionTimeout"],
        }
        return self._send("POST", "/api/v1/services/captiveportal", json=payload)

    def disconnect(self, command):
        payload = {
            "action": "disconnect",
            "mac": command["macAddress"],
            "ip": command["ipAddress"],
        }
        return self._send("POST", "/api/v1/services/captiveportal", json=payload)


class OpenWrtAdapter(GatewayAdapter):
    """nodogsplash; the session id is the client token, no timeout field."""

    vendor = "openwrt"

    def authorize(self, command):
        rate = f"{command['bandwidthMbps']}M"
        params = {
            "mac": command["macAddress"],
            "ip": command["ipAddress"],
            "token": command["sessionId"],
            "upload": rate,
            "download": rate,
        }
        return self._send("GET", "/cgi-bin/nodogsplash/auth", params=params)

    def disconnect(self, command):
        params = {
            "mac": command["macAddress"],
            "ip": command["ipAddress"],
            "token": command["sessionId"],
        }
        return self._send("GET", "/cgi-bin/nodogsplash/deauth", params=params)


ADAPTERS = {
    adapter.vendor: adapter
    for adapter in (MikroTikAdapter, UniFiAdapter, PfSenseAdapter, OpenWrtAdapter)
}


def get_adapter(gateway: Gateway) -> GatewayAdapter:
    adapter_class = ADAPTERS.get(gateway.vendor)
    if adapter_class is None:
        raise ValueError(f"Unsupported gateway vendor: {gateway.vendor}")
    return adapter_class(gateway)


def _is_stale(command: dict) -> bool:
    """
    True when the command no longer reflects the device's current grant:
    an authorize/update for a session that has ended, or a disconnect for a
    device that has since been granted a newer session.
    """
    action = command["action"]
    if action in (ACTION_AUTHORIZE, ACTION_UPDATE):
        return not Session.objects.filter(
            pk=command["sessionId"], status="active"
        ).exists()
    if action == ACTION_DISCONNECT:
        return (
            Session.objects.filter(active_mac=command["macAddress"], status="active")
            .exclude(pk=command["sessionId"])
            .exists()
        )
    return False


def dispatch_authorization(command: dict):
    """
    Deliver one authorization command to its gateway.

    Commands for unknown or inactive gateways and stale commands are
    dropped. Vendor failures propagate for redelivery.
    """
    action = command.get("action")
    gateway_id = command.get("gatewayId")

    if action not in (ACTION_AUTHORIZE, ACTION_UPDATE, ACTION_DISCONNECT):
        logger.error(f"Dropping authorization command with unknown action {action!r}")
        return False

    gateway = Gateway.objects.filter(pk=gateway_id).first() if gateway_id else None
    if gateway is None:
        logger.error(f"Gateway not found: {gateway_id!r}, dropping {action} for {command.get('sessionId')}")
        return False
    if not gateway.is_active:
        logger.warning(f"Gateway {gateway_id} is {gateway.status}, dropping {action}")
        return False

    if _is_stale(command):
        logger.info(f"Dropping stale {action} for session {command['sessionId']}")
        return False

    try:
        adapter = get_adapter(gateway)
    except ValueError as e:
        logger.error(str(e))
        return False

    logger.info(
        f"Sending {action} to {gateway.vendor} gateway {gateway_id} for "
        f"{command['macAddress']} ({command['bandwidthMbps']} Mbps, {command['sessionTimeout']}s)"
    )
    getattr(adapter, action)(command)
    logger.info(f"{gateway.vendor} {action} sent for session {command['sessionId']}")
    return True
