"""Instance persistence with compare-and-swap state transitions."""
from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from .models import (
    JOB_DONE,
    JOB_FAILED,
    JOB_KIND_MINT,
    JOB_PENDING,
    JOB_RUNNING,
    PROVISIONING_STEPS,
    STATUS_DELETED,
    STATUS_DELETING,
    STATUS_MINTING,
    STATUS_PROVISIONING,
    Instance,
    Job,
    utcnow,
)

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$")


class AgentboxError(Exception):
    """Raised when a request against an instance cannot be completed."""

    def __init__(self, message: str, status_code: int = 400, code: str = "invalid_input") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def validate_name(name: str) -> str:
    candidate = (name or "").strip().lower()
    if not NAME_PATTERN.match(candidate):
        raise AgentboxError(
            "Name must be 3-63 characters of lowercase letters, digits and hyphens, "
            "starting and ending with a letter or digit",
            code="invalid_name",
        )
    return candidate


def parse_funded_assets(value: Optional[str]) -> set[str]:
    return {asset for asset in (value or "").split(",") if asset}


class InstanceStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # -- reads -----------------------------------------------------------

    def get(self, instance_id: int, *, include_deleted: bool = False) -> Optional[Instance]:
        with self._session_factory() as session:
            row = session.get(Instance, instance_id)
            if row is None:
                return None
            if row.status == STATUS_DELETED and not include_deleted:
                return None
            return row

    def name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(func.count()).select_from(Instance).where(
            Instance.name == name, Instance.status != STATUS_DELETED
        )
        if exclude_id is not None:
            stmt = stmt.where(Instance.id != exclude_id)
        with self._session_factory() as session:
            return bool(session.execute(stmt).scalar_one())

    def list_instances(self, owner_wallet: Optional[str] = None) -> List[Instance]:
        stmt = select(Instance).where(Instance.status != STATUS_DELETED)
        if owner_wallet is not None:
            stmt = stmt.where(Instance.owner_wallet == owner_wallet)
        stmt = stmt.order_by(Instance.created_at.desc())
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    def list_expiring(self, cutoff: datetime, owner_wallet: Optional[str] = None) -> List[Instance]:
        stmt = select(Instance).where(
            Instance.expires_at <= cutoff,
            Instance.status.notin_((STATUS_DELETING, STATUS_DELETED)),
        )
        if owner_wallet is not None:
            stmt = stmt.where(Instance.owner_wallet == owner_wallet)
        stmt = stmt.order_by(Instance.expires_at.asc())
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    def find_by_nft_mints(self, mints: Iterable[str]) -> List[Instance]:
        mints = list(mints)
        if not mints:
            return []
        stmt = select(Instance).where(Instance.nft_mint.in_(mints))
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    def find_for_callback(self, instance_id: int, callback_token: str) -> Optional[Instance]:
        stmt = select(Instance).where(
            Instance.id == instance_id,
            Instance.status == STATUS_PROVISIONING,
            Instance.callback_token == callback_token,
        )
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one_or_none()

    def due_for_teardown(self, now: datetime) -> List[Instance]:
        stmt = select(Instance).where(
            or_(
                and_(
                    Instance.expires_at <= now,
                    Instance.status.notin_((STATUS_DELETING, STATUS_DELETED)),
                ),
                Instance.status == STATUS_DELETING,
            )
        )
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())

    # -- writes ----------------------------------------------------------

    def insert(self, **fields: Any) -> Instance:
        row = Instance(**fields)
        with self._session_factory.begin() as session:
            session.add(row)
        return row

    def update_fields(self, instance_id: int, **values: Any) -> bool:
        """Unconditional update on a live row; returns False when no row matched."""
        stmt = (
            update(Instance)
            .where(Instance.id == instance_id, Instance.status != STATUS_DELETED)
            .values(**values)
        )
        with self._session_factory.begin() as session:
            return session.execute(stmt).rowcount == 1

    def transition(
        self,
        instance_id: int,
        from_statuses: Sequence[str],
        to_status: str,
        **values: Any,
    ) -> bool:
        stmt = (
            update(Instance)
            .where(Instance.id == instance_id, Instance.status.in_(tuple(from_statuses)))
            .values(status=to_status, **values)
        )
        with self._session_factory.begin() as session:
            return session.execute(stmt).rowcount == 1

    def extend(self, instance_id: int, expected_expires_at: datetime, new_expires_at: datetime) -> bool:
        """Move the expiry forward only if the row is live and nobody moved it first."""
        stmt = (
            update(Instance)
            .where(
                Instance.id == instance_id,
                Instance.status.notin_((STATUS_DELETING, STATUS_DELETED)),
                Instance.expires_at == expected_expires_at,
            )
            .values(expires_at=new_expires_at)
        )
        with self._session_factory.begin() as session:
            return session.execute(stmt).rowcount == 1

    def mark_funded(self, instance_id: int, asset: str) -> None:
        with self._session_factory.begin() as session:
            row = session.get(Instance, instance_id, with_for_update=True)
            if row is None:
                return
            funded = parse_funded_assets(row.funded_assets)
            funded.add(asset)
            row.funded_assets = ",".join(sorted(funded))

    def rename(self, instance_id: int, name: str) -> bool:
        with self._session_factory.begin() as session:
            clash = session.execute(
                select(func.count())
                .select_from(Instance)
                .where(
                    Instance.name == name,
                    Instance.status != STATUS_DELETED,
                    Instance.id != instance_id,
                )
            ).scalar_one()
            if clash:
                raise AgentboxError(f"Name {name} is already in use", status_code=409, code="name_taken")
            result = session.execute(
                update(Instance)
                .where(Instance.id == instance_id, Instance.status != STATUS_DELETED)
                .values(name=name)
            )
            return result.rowcount == 1

    def report_step(self, instance_id: int, callback_token: str, step: str) -> bool:
        """Advance the provisioning step; a backwards report is accepted but ignored."""
        position = PROVISIONING_STEPS.index(step)
        earlier_or_same = PROVISIONING_STEPS[: position + 1]
        guard = (
            Instance.id == instance_id,
            Instance.status == STATUS_PROVISIONING,
            Instance.callback_token == callback_token,
        )
        with self._session_factory.begin() as session:
            result = session.execute(
                update(Instance)
                .where(
                    *guard,
                    or_(Instance.provisioning_step.is_(None), Instance.provisioning_step.in_(earlier_or_same)),
                )
                .values(provisioning_step=step)
            )
            if result.rowcount == 1:
                return True
            matched = session.execute(select(func.count()).select_from(Instance).where(*guard)).scalar_one()
            return bool(matched)

    def complete_callback(
        self,
        instance_id: int,
        callback_token: str,
        vm_wallet: str,
        gateway_token: str,
    ) -> bool:
        """Consume the callback token and enqueue the mint job in one transaction."""
        now = utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(Instance)
                .where(
                    Instance.id == instance_id,
                    Instance.status == STATUS_PROVISIONING,
                    Instance.callback_token == callback_token,
                )
                .values(
                    status=STATUS_MINTING,
                    vm_wallet=vm_wallet,
                    gateway_token=gateway_token,
                    provisioning_step=None,
                    callback_token=None,
                )
            )
            if result.rowcount != 1:
                return False
            session.add(Job(instance_id=instance_id, kind=JOB_KIND_MINT, status=JOB_PENDING, created_at=now, updated_at=now))
        return True

    def begin_mint_retry(self, instance_id: int) -> bool:
        """Single conditional update gating a mint retry, enqueuing the job on success."""
        now = utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(Instance)
                .where(
                    Instance.id == instance_id,
                    Instance.status.notin_((STATUS_MINTING, STATUS_DELETING, STATUS_DELETED)),
                    Instance.nft_mint.is_(None),
                    Instance.vm_wallet.is_not(None),
                )
                .values(status=STATUS_MINTING)
            )
            if result.rowcount != 1:
                return False
            session.add(Job(instance_id=instance_id, kind=JOB_KIND_MINT, status=JOB_PENDING, created_at=now, updated_at=now))
        return True

    def soft_delete(self, instance_id: int) -> bool:
        stmt = (
            update(Instance)
            .where(Instance.id == instance_id, Instance.status != STATUS_DELETED)
            .values(
                status=STATUS_DELETED,
                deleted_at=utcnow(),
                callback_token=None,
                gateway_token=None,
                terminal_token=None,
                provisioning_step=None,
            )
        )
        with self._session_factory.begin() as session:
            return session.execute(stmt).rowcount == 1

    # -- mint outbox -----------------------------------------------------

    def claim_next_job(self) -> Optional[Job]:
        """Claim the oldest pending job; another claimer winning the race yields the next one."""
        while True:
            with self._session_factory.begin() as session:
                job = session.execute(
                    select(Job).where(Job.status == JOB_PENDING).order_by(Job.id.asc()).limit(1)
                ).scalar_one_or_none()
                if job is None:
                    return None
                result = session.execute(
                    update(Job)
                    .where(Job.id == job.id, Job.status == JOB_PENDING)
                    .values(status=JOB_RUNNING, attempts=Job.attempts + 1, updated_at=utcnow())
                )
                if result.rowcount == 1:
                    session.refresh(job)
                    return job

    def finish_job(self, job_id: int, *, error: Optional[str] = None) -> None:
        values: dict[str, Any] = {"status": JOB_DONE if error is None else JOB_FAILED, "updated_at": utcnow()}
        if error is not None:
            values["last_error"] = error[:2000]
        with self._session_factory.begin() as session:
            session.execute(update(Job).where(Job.id == job_id).values(**values))

    def requeue_running_jobs(self) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(Job).where(Job.status == JOB_RUNNING).values(status=JOB_PENDING, updated_at=utcnow())
            )
            return int(result.rowcount or 0)

    def jobs_for(self, instance_id: int) -> List[Job]:
        stmt = select(Job).where(Job.instance_id == instance_id).order_by(Job.id.asc())
        with self._session_factory() as session:
            return list(session.execute(stmt).scalars())


__all__ = ["AgentboxError", "InstanceStore", "NAME_PATTERN", "parse_funded_assets", "validate_name"]
