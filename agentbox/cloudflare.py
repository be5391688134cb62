"""Cloudflare DNS records for instance hostnames."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudflare.com/client/v4"


class CloudflareError(RuntimeError):
    pass


class CloudflareClient:
    def __init__(self, api_token: str, zone_id: str, *, api_base: str = API_BASE, timeout: float = 15.0) -> None:
        self.zone_id = zone_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._http = requests.Session()
        self._http.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.api_base}/zones/{self.zone_id}{path}"
        try:
            response = self._http.request(method, url, timeout=self.timeout, **kwargs)
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise CloudflareError(f"Cloudflare request failed: {exc}") from exc
        if not isinstance(body, dict) or not body.get("success"):
            errors = body.get("errors") if isinstance(body, dict) else None
            messages = ", ".join(str(err.get("message")) for err in errors or [] if isinstance(err, dict))
            raise CloudflareError(f"Cloudflare {method} {path} failed: {messages or response.status_code}")
        return body.get("result")

    def create_record(self, hostname: str, ip: str) -> Dict[str, Any]:
        return self._call(
            "POST",
            "/dns_records",
            json={"type": "A", "name": hostname, "content": ip, "ttl": 60, "proxied": False},
        )

    def delete_record(self, hostname: str) -> int:
        """Delete every A record for hostname; zero matches is not an error."""
        records: List[Dict[str, Any]] = self._call(
            "GET", "/dns_records", params={"type": "A", "name": hostname}
        ) or []
        removed = 0
        for record in records:
            record_id = record.get("id")
            if not record_id:
                continue
            self._call("DELETE", f"/dns_records/{record_id}")
            removed += 1
        if not removed:
            logger.info("No DNS record found for %s", hostname)
        return removed


__all__ = ["CloudflareClient", "CloudflareError"]
