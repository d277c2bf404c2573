"""File-based JSON storage for promotion approval records.

Records persist across promotion attempts in ``approvals.json`` under the
store directory (``~/.chartifact/approvals/`` by default). A record is created
pending when a promotion needs approval, decided by an approver, and consumed
by the promotion that relies on it, which stamps its outcome.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

import structlog

logger = structlog.get_logger(__name__)

APPROVALS_FILE = "approvals.json"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalOutcome(Enum):
    NONE = ""
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class ApprovalRecord:
    id: str
    source_env: str
    target_env: str
    channel_ids: list[str] = field(default_factory=list)
    status: str = ApprovalStatus.PENDING.value
    requested_by: str = ""
    approved_by: str = ""
    timestamp: str = ""
    decided_at: str = ""
    forced: bool = False
    outcome: str = ApprovalOutcome.NONE.value
    notes: str = ""

    @property
    def is_usable(self) -> bool:
        """Approved and not yet consumed by a promotion."""
        return self.status == ApprovalStatus.APPROVED.value and not self.outcome

    def covers(self, source_env: str, target_env: str, channel_ids: Iterable[str]) -> bool:
        return (
            self.source_env == source_env
            and self.target_env == target_env
            and set(channel_ids) <= set(self.channel_ids)
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ApprovalStore:
    """File-based storage for approval records."""

    def __init__(self, base_dir: Optional[str | Path] = None) -> None:
        if base_dir is None:
            self._base = Path.home() / ".chartifact" / "approvals"
        else:
            self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._path = self._base / APPROVALS_FILE

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read(self) -> list[ApprovalRecord]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("approvals_unreadable", path=str(self._path), error=str(e))
            return []
        if not isinstance(data, list):
            return []
        return [ApprovalRecord.from_dict(item) for item in data if isinstance(item, dict)]

    def _write(self, records: list[ApprovalRecord]) -> None:
        self._path.write_text(
            json.dumps([asdict(r) for r in records], indent=2, default=str), encoding="utf-8"
        )

    def _append(self, record: ApprovalRecord) -> ApprovalRecord:
        records = self._read()
        records.append(record)
        self._write(records)
        return record

    def _update(self, record_id: str, **changes) -> Optional[ApprovalRecord]:
        records = self._read()
        for record in records:
            if record.id == record_id:
                for key, value in changes.items():
                    setattr(record, key, value)
                self._write(records)
                return record
        return None

    # ------------------------------------------------------------------
    # Record creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        source_env: str,
        target_env: str,
        channel_ids: list[str],
        requested_by: str = "",
        notes: str = "",
    ) -> ApprovalRecord:
        """Record a pending approval request."""
        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            source_env=source_env,
            target_env=target_env,
            channel_ids=list(channel_ids),
            requested_by=requested_by,
            timestamp=_now(),
            notes=notes,
        )
        logger.info("approval_requested", approval_id=record.id, source=source_env, target=target_env)
        return self._append(record)

    def record_approved(
        self,
        source_env: str,
        target_env: str,
        channel_ids: list[str],
        approved_by: str,
        forced: bool = False,
        notes: str = "",
    ) -> ApprovalRecord:
        """Record an approval granted together with the promotion (inline or forced)."""
        now = _now()
        record = ApprovalRecord(
            id=str(uuid.uuid4()),
            source_env=source_env,
            target_env=target_env,
            channel_ids=list(channel_ids),
            status=ApprovalStatus.APPROVED.value,
            requested_by=approved_by,
            approved_by=approved_by,
            timestamp=now,
            decided_at=now,
            forced=forced,
            notes=notes,
        )
        return self._append(record)

    # ------------------------------------------------------------------
    # Queries and decisions
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> Optional[ApprovalRecord]:
        for record in self._read():
            if record.id == record_id:
                return record
        return None

    def list_records(
        self,
        status: Optional[str] = None,
        source_env: Optional[str] = None,
        target_env: Optional[str] = None,
    ) -> list[ApprovalRecord]:
        records = self._read()
        if status:
            records = [r for r in records if r.status == status]
        if source_env:
            records = [r for r in records if r.source_env == source_env]
        if target_env:
            records = [r for r in records if r.target_env == target_env]
        return records

    def find_usable(self, source_env: str, target_env: str, channel_ids: list[str]) -> Optional[ApprovalRecord]:
        """The oldest approved, unconsumed record covering every requested channel."""
        for record in self._read():
            if record.is_usable and record.covers(source_env, target_env, channel_ids):
                return record
        return None

    def approve(self, record_id: str, approver: str, comment: str = "") -> Optional[ApprovalRecord]:
        """Approve a pending record. Decided records are returned unchanged."""
        return self._decide(record_id, ApprovalStatus.APPROVED, approver, comment)

    def reject(self, record_id: str, approver: str, comment: str = "") -> Optional[ApprovalRecord]:
        return self._decide(record_id, ApprovalStatus.REJECTED, approver, comment)

    def _decide(self, record_id: str, status: ApprovalStatus, approver: str, comment: str) -> Optional[ApprovalRecord]:
        record = self.get(record_id)
        if record is None or record.status != ApprovalStatus.PENDING.value:
            return record
        notes = f"{record.notes}\n{comment}".strip() if comment else record.notes
        updated = self._update(
            record_id,
            status=status.value,
            approved_by=approver,
            decided_at=_now(),
            notes=notes,
        )
        logger.info("approval_decided", approval_id=record_id, status=status.value, by=approver)
        return updated

    def set_outcome(self, record_id: str, outcome: ApprovalOutcome) -> Optional[ApprovalRecord]:
        return self._update(record_id, outcome=outcome.value)

    def get_pending_count(self) -> int:
        return len(self.list_records(status=ApprovalStatus.PENDING.value))
