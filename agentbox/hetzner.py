"""Minimal Hetzner Cloud client for server lifecycle calls."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

API_BASE = "https://api.hetzner.cloud/v1"


class HetznerError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LocationUnavailableError(HetznerError):
    """The requested location has no capacity for the server type."""


@dataclass
class ServerInfo:
    id: int
    ip: str
    status: str
    root_password: Optional[str] = None
    location: Optional[str] = None


def _parse_server(payload: Dict[str, Any], root_password: Optional[str] = None) -> ServerInfo:
    server = payload.get("server") or {}
    ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip") or ""
    location = ((server.get("datacenter") or {}).get("location") or {}).get("name")
    return ServerInfo(
        id=int(server["id"]),
        ip=str(ipv4),
        status=str(server.get("status") or "unknown"),
        root_password=root_password,
        location=location,
    )


class HetznerClient:
    def __init__(
        self,
        api_token: str,
        *,
        snapshot_id: str,
        server_type: str = "cx33",
        locations: Sequence[str] = ("nbg1",),
        ssh_key_ids: Sequence[int] = (),
        api_base: str = API_BASE,
        timeout: float = 30.0,
    ) -> None:
        self.snapshot_id = snapshot_id
        self.server_type = server_type
        self.locations: List[str] = [loc for loc in locations if loc]
        self.ssh_key_ids = list(ssh_key_ids)
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._http = requests.Session()
        self._http.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            return self._http.request(method, f"{self.api_base}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise HetznerError(f"Hetzner request failed: {exc}") from exc

    def create_server(self, name: str, user_data: str, location: str) -> ServerInfo:
        body: Dict[str, Any] = {
            "name": name,
            "server_type": self.server_type,
            "image": int(self.snapshot_id) if str(self.snapshot_id).isdigit() else self.snapshot_id,
            "location": location,
            "start_after_create": True,
            "user_data": user_data,
        }
        if self.ssh_key_ids:
            body["ssh_keys"] = self.ssh_key_ids
        response = self._request("POST", "/servers", json=body)
        if response.ok:
            payload = response.json()
            info = _parse_server(payload, root_password=payload.get("root_password"))
            info.location = info.location or location
            return info
        text = response.text
        if response.status_code == 412 and "resource_unavailable" in text:
            raise LocationUnavailableError(f"Location {location} unavailable", status_code=412)
        logger.error("Hetzner create server failed (%s): %s", response.status_code, text)
        raise HetznerError(f"Hetzner create server failed ({response.status_code})", status_code=response.status_code)

    def create_server_with_fallback(self, name: str, user_data: str) -> ServerInfo:
        """Try each configured location in order, moving on only for capacity errors."""
        if not self.locations:
            raise HetznerError("No Hetzner locations configured")
        for index, location in enumerate(self.locations):
            try:
                info = self.create_server(name, user_data, location)
            except LocationUnavailableError:
                logger.warning("Hetzner: %s unavailable, trying next location", location)
                continue
            if index > 0:
                logger.info("Hetzner: created %s in fallback location %s", name, location)
            return info
        raise HetznerError(
            f"Hetzner create server failed: no capacity in any location ({', '.join(self.locations)})",
            status_code=412,
        )

    def get_server(self, server_id: int) -> ServerInfo:
        response = self._request("GET", f"/servers/{server_id}")
        if not response.ok:
            logger.error("Hetzner get server failed (%s): %s", response.status_code, response.text)
            raise HetznerError(f"Hetzner get server failed ({response.status_code})", status_code=response.status_code)
        return _parse_server(response.json())

    def delete_server(self, server_id: int) -> bool:
        """Delete the server; returns False when it was already gone."""
        response = self._request("DELETE", f"/servers/{server_id}")
        if response.status_code == 404:
            logger.info("Hetzner server %s already deleted", server_id)
            return False
        if not response.ok:
            logger.error("Hetzner delete server failed (%s): %s", response.status_code, response.text)
            raise HetznerError(f"Hetzner delete server failed ({response.status_code})", status_code=response.status_code)
        return True

    def reboot_server(self, server_id: int) -> None:
        response = self._request("POST", f"/servers/{server_id}/actions/reboot")
        if not response.ok:
            logger.error("Hetzner reboot server failed (%s): %s", response.status_code, response.text)
            raise HetznerError(f"Hetzner reboot server failed ({response.status_code})", status_code=response.status_code)


__all__ = ["HetznerClient", "HetznerError", "LocationUnavailableError", "ServerInfo"]
