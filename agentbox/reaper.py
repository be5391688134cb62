"""Instance teardown: explicit deletion and the periodic expiry sweep."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Optional

from .auth import Identity
from .events import EventRecorder
from .instances import AgentboxError, InstanceStore
from .models import (
    STATUS_DELETING,
    STATUS_ERROR,
    STATUS_MINTING,
    STATUS_PROVISIONING,
    STATUS_RUNNING,
    STATUS_STOPPED,
    Instance,
    utcnow,
)

logger = logging.getLogger(__name__)

LIVE_STATUSES = (STATUS_PROVISIONING, STATUS_MINTING, STATUS_RUNNING, STATUS_STOPPED, STATUS_ERROR)


class ExpiryReaper:
    def __init__(
        self,
        settings: Any,
        store: InstanceStore,
        events: EventRecorder,
        vm: Optional[Any] = None,
        dns: Optional[Any] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.vm = vm
        self.dns = dns

    def _release_resources(self, row: Instance) -> None:
        """Best effort; the row is authoritative and is deleted regardless."""
        if self.vm is not None:
            try:
                self.vm.delete_server(row.id)
            except Exception as exc:
                logger.error("Failed to delete VM for instance %s: %s", row.id, exc)
        hostname = f"{row.name}.{self.settings.instance_base_domain}"
        if self.dns is not None:
            try:
                self.dns.delete_record(hostname)
            except Exception as exc:
                logger.error("Failed to delete DNS record %s: %s", hostname, exc)

    def _finish(self, row: Instance, actor_type: str, actor_id: str) -> bool:
        self._release_resources(row)
        if not self.store.soft_delete(row.id):
            return False
        self.events.record_instance("instance.deleted", row.id, actor_type=actor_type, actor_id=actor_id)
        return True

    def delete(self, row: Instance, actor: Identity) -> None:
        if not self.store.transition(row.id, LIVE_STATUSES + (STATUS_DELETING,), STATUS_DELETING):
            raise AgentboxError("Instance not found", status_code=404, code="not_found")
        logger.info("Deleting instance %s (%s) for %s", row.id, row.name, actor.actor_id)
        self.events.record_instance(
            "instance.deletion_started", row.id, actor_type=actor.actor_type, actor_id=actor.actor_id
        )
        self._finish(row, actor.actor_type, actor.actor_id)

    def sweep_once(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        deleted = 0
        for row in self.store.due_for_teardown(now):
            try:
                if row.status != STATUS_DELETING:
                    if not self.store.transition(row.id, LIVE_STATUSES, STATUS_DELETING):
                        continue
                    self.events.record_instance("instance.expired", row.id, actor_type="system", actor_id="reaper")
                if self._finish(row, "system", "reaper"):
                    deleted += 1
            except Exception as exc:
                logger.exception("Expiry teardown for instance %s failed: %s", row.id, exc)
        if deleted:
            logger.info("Expiry sweep deleted %s instances", deleted)
        else:
            logger.debug("Expiry sweep found nothing to delete")
        return deleted

    def run_forever(self) -> None:
        """Blocking loop that sweeps every configured interval."""
        interval = int(self.settings.reaper_interval_seconds)
        logger.info("Starting expiry reaper with interval %s seconds", interval)
        while True:
            start = time.time()
            try:
                self.sweep_once()
            except Exception as exc:
                logger.exception("Unexpected error in expiry sweep: %s", exc)
            elapsed = time.time() - start
            time.sleep(max(interval - elapsed, 0))


__all__ = ["ExpiryReaper", "LIVE_STATUSES"]
