"""Audit service — append-only, hash-chained audit ledger.

Every entry's checksum covers its identifying fields and the checksum of
the entry before it, so editing any historical row breaks the chain.
Appends are serialized by a single writer lock; reads run concurrently on
their own sessions.
"""

from __future__ import annotations

import asyncio
import csv
import enum
import io
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from account_guard.engine.models.audit_log import AuditCheckpoint, AuditLog
from account_guard.errors.definitions import ErrAuditEntryNotFound
from account_guard.utils.clock import hour_of_day, to_datetime
from account_guard.utils.crypto import constant_time_equals, hmac_sha256_hex, new_id, sha256_hex

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from account_guard.engine.client import GuardEngine

logger = logging.getLogger(__name__)

LOG_ID_PREFIX = "log"
DEFAULT_SEARCH_LIMIT = 100
DEFAULT_RECENT_LIMIT = 50
_TOP_ACTIONS = 10

SECURITY_ACTIONS = frozenset(
    {
        "login",
        "logout",
        "password_change",
        "api_key_created",
        "api_key_rotated",
        "api_key_revoked",
        "2fa_enabled",
        "permission_change",
    }
)

_CSV_HEADERS = [
    "ID",
    "User ID",
    "Action",
    "Resource",
    "Resource ID",
    "Method",
    "Endpoint",
    "Status Code",
    "IP Address",
    "User Agent",
    "Timestamp",
    "Checksum",
]


class ExportFormat(enum.StrEnum):
    JSON = "json"
    CSV = "csv"


@dataclass(frozen=True)
class RequestContext:
    """HTTP details attached to an audit entry."""

    method: str | None = None
    endpoint: str | None = None
    status_code: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditQuery:
    """Search filters. Action and resource match case-insensitive substrings."""

    user_id: str | None = None
    action: str | None = None
    resource: str | None = None
    start: int | None = None
    end: int | None = None
    ip_address: str | None = None
    limit: int = DEFAULT_SEARCH_LIMIT
    offset: int = 0


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    tampered: list[str] = field(default_factory=list)
    checked: int = 0


@dataclass(frozen=True)
class AuditExport:
    """A signed bundle of audit entries.

    The signature covers the export metadata (entry count, time, exporter,
    format), not the entry contents; entries carry their own checksums.
    """

    entries: list[AuditLog]
    exported_at: int
    exported_by: str
    format: ExportFormat
    signature: str
    content: str


@dataclass(frozen=True)
class ArchiveResult:
    archived: int
    remaining: int
    anchor_checksum: str | None = None


@dataclass(frozen=True)
class ActivitySummary:
    total_actions: int
    unique_resources: int
    top_actions: list[dict[str, Any]]
    activity_by_hour: list[int]


def _canonical(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def normalize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Metadata as it will read back from the JSON column."""
    return json.loads(json.dumps(metadata or {}, default=str))


def compute_checksum(
    *,
    id_: str,
    user_id: str,
    action: str,
    resource: str,
    timestamp: int,
    metadata: dict[str, Any],
    previous_checksum: str,
    request: dict[str, Any] | None = None,
) -> str:
    """SHA-256 hex over the canonical JSON of an entry's chained fields.

    *request* carries the request columns (resource id, method, endpoint,
    status code, client address, user agent) so edits to them break the
    chain too.
    """
    return sha256_hex(
        _canonical(
            {
                "id": id_,
                "user_id": user_id,
                "action": action,
                "resource": resource,
                "timestamp": timestamp,
                "metadata": metadata,
                "previous_checksum": previous_checksum,
                "request": request or {},
            }
        )
    )


def entry_checksum(entry: AuditLog) -> str:
    """Recompute the checksum of a stored entry."""
    return compute_checksum(
        id_=entry.id,
        user_id=entry.user_id,
        action=entry.action,
        resource=entry.resource,
        timestamp=entry.timestamp,
        metadata=entry.metadata_,
        previous_checksum=entry.previous_checksum,
        request={
            "resource_id": entry.resource_id,
            "method": entry.method,
            "endpoint": entry.endpoint,
            "status_code": entry.status_code,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
        },
    )


def render_csv(entries: Sequence[AuditLog]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(_CSV_HEADERS)
    for e in entries:
        writer.writerow(
            [
                e.id,
                e.user_id,
                e.action,
                e.resource,
                e.resource_id or "",
                e.method or "",
                e.endpoint or "",
                "" if e.status_code is None else e.status_code,
                e.ip_address,
                e.user_agent,
                to_datetime(e.timestamp).isoformat(),
                e.checksum,
            ]
        )
    return buf.getvalue()


def entry_to_dict(entry: AuditLog) -> dict[str, Any]:
    return {
        "sequence": entry.sequence,
        "id": entry.id,
        "user_id": entry.user_id,
        "action": entry.action,
        "resource": entry.resource,
        "resource_id": entry.resource_id,
        "method": entry.method,
        "endpoint": entry.endpoint,
        "status_code": entry.status_code,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "timestamp": entry.timestamp,
        "metadata": entry.metadata_,
        "previous_checksum": entry.previous_checksum,
        "checksum": entry.checksum,
    }


def render_json(entries: Sequence[AuditLog]) -> str:
    return json.dumps([entry_to_dict(e) for e in entries], indent=2, default=str)


class AuditService:
    """Business logic for the audit ledger."""

    def __init__(self, engine: GuardEngine) -> None:
        self._engine = engine
        self._writer = asyncio.Lock()
        self._head: str | None = None

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    async def _load_head(self, session: AsyncSession) -> str:
        """Checksum the next entry must chain to."""
        last = (
            await session.execute(
                select(AuditLog.checksum).order_by(AuditLog.sequence.desc()).limit(1)
            )
        ).scalar_one_or_none()
        if last is not None:
            return last
        return await self._anchor(session)

    @staticmethod
    async def _anchor(session: AsyncSession) -> str:
        anchor = (
            await session.execute(
                select(AuditCheckpoint.anchor_checksum)
                .order_by(AuditCheckpoint.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        return anchor or ""

    async def log(
        self,
        user_id: str,
        action: str,
        resource: str,
        metadata: dict[str, Any] | None = None,
        request: RequestContext | None = None,
    ) -> AuditLog:
        """Append an entry to the ledger.

        ``metadata["resource_id"]``, when present, is copied to the
        ``resource_id`` column.
        """
        meta = normalize_metadata(metadata)
        request = request or RequestContext()

        async with self._writer, self._engine.datastore.session() as session:
            if self._head is None:
                self._head = await self._load_head(session)

            entry = AuditLog(
                id=new_id(LOG_ID_PREFIX),
                user_id=user_id,
                action=action,
                resource=resource,
                resource_id=str(meta["resource_id"]) if meta.get("resource_id") else None,
                method=request.method,
                endpoint=request.endpoint,
                status_code=request.status_code,
                ip_address=request.ip_address or "unknown",
                user_agent=request.user_agent or "unknown",
                timestamp=self._engine.clock.now_ms(),
                metadata_=meta,
                previous_checksum=self._head,
            )
            entry.checksum = entry_checksum(entry)
            session.add(entry)
            try:
                await session.commit()
            except Exception:
                # Re-read the head on the next append.
                self._head = None
                raise
            self._head = entry.checksum

        return entry

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    @staticmethod
    def verify_entry(entry: AuditLog) -> bool:
        """True if the stored checksum matches the recomputed one."""
        return constant_time_equals(entry_checksum(entry), entry.checksum)

    async def verify_chain(self) -> ChainVerification:
        """Recompute every checksum and check each entry links to its predecessor.

        The first remaining entry links to the latest archive checkpoint's
        anchor (or the empty string if nothing was ever archived).
        """
        tampered: list[str] = []
        checked = 0
        async with self._engine.datastore.session() as session:
            expected_prev = await self._anchor(session)
            result = await session.execute(select(AuditLog).order_by(AuditLog.sequence))
            for entry in result.scalars():
                checked += 1
                if not self.verify_entry(entry) or entry.previous_checksum != expected_prev:
                    tampered.append(entry.id)
                expected_prev = entry.checksum

        if tampered:
            logger.warning("Audit chain verification failed for %d entries", len(tampered))
            if self._engine.metrics:
                self._engine.metrics.record_integrity_failure(len(tampered))
        return ChainVerification(valid=not tampered, tampered=tampered, checked=checked)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_entry(self, entry_id: str) -> AuditLog:
        """Look up an entry by id.

        Raises:
            GuardError: If no such entry exists.
        """
        async with self._engine.datastore.session() as session:
            entry = (
                await session.execute(select(AuditLog).where(AuditLog.id == entry_id))
            ).scalar_one_or_none()
        if entry is None:
            raise ErrAuditEntryNotFound
        return entry

    async def search(self, query: AuditQuery) -> list[AuditLog]:
        """Entries matching *query*, newest first."""
        stmt = select(AuditLog)
        if query.user_id:
            stmt = stmt.where(AuditLog.user_id == query.user_id)
        if query.action:
            stmt = stmt.where(
                func.lower(AuditLog.action).contains(query.action.lower(), autoescape=True)
            )
        if query.resource:
            stmt = stmt.where(
                func.lower(AuditLog.resource).contains(query.resource.lower(), autoescape=True)
            )
        if query.start is not None:
            stmt = stmt.where(AuditLog.timestamp >= query.start)
        if query.end is not None:
            stmt = stmt.where(AuditLog.timestamp <= query.end)
        if query.ip_address:
            stmt = stmt.where(AuditLog.ip_address == query.ip_address)

        limit = query.limit if query.limit > 0 else DEFAULT_SEARCH_LIMIT
        stmt = (
            stmt.order_by(AuditLog.timestamp.desc(), AuditLog.sequence.desc())
            .offset(max(0, query.offset))
            .limit(limit)
        )
        async with self._engine.datastore.session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def recent_logs(self, user_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> list[AuditLog]:
        return await self.search(AuditQuery(user_id=user_id, limit=limit))

    async def _user_window(self, user_id: str, timeframe_ms: int) -> list[AuditLog]:
        cutoff = self._engine.clock.now_ms() - timeframe_ms
        async with self._engine.datastore.session() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.user_id == user_id, AuditLog.timestamp >= cutoff)
                .order_by(AuditLog.sequence)
            )
            return list(result.scalars().all())

    async def security_events(self, user_id: str, timeframe_ms: int = 86_400_000) -> list[AuditLog]:
        """Security-relevant entries of *user_id* within *timeframe_ms*."""
        entries = await self._user_window(user_id, timeframe_ms)
        return [e for e in entries if e.action in SECURITY_ACTIONS]

    async def activity_summary(
        self, user_id: str, timeframe_ms: int = 86_400_000
    ) -> ActivitySummary:
        """Action counts and hourly (UTC) activity of *user_id*."""
        entries = await self._user_window(user_id, timeframe_ms)
        by_hour = [0] * 24
        for e in entries:
            by_hour[hour_of_day(e.timestamp)] += 1
        actions = Counter(e.action for e in entries)
        return ActivitySummary(
            total_actions=len(entries),
            unique_resources=len({e.resource for e in entries}),
            top_actions=[{"action": a, "count": n} for a, n in actions.most_common(_TOP_ACTIONS)],
            activity_by_hour=by_hour,
        )

    async def count(self) -> int:
        async with self._engine.datastore.session() as session:
            return await self._count(session)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _sign(self, count: int, exported_at: int, exported_by: str, fmt: str) -> str:
        payload = _canonical(
            {
                "count": count,
                "exported_at": exported_at,
                "exported_by": exported_by,
                "format": fmt,
            }
        )
        return hmac_sha256_hex(self._engine.config.audit.export_signing_key, payload)

    async def export(
        self, query: AuditQuery, fmt: ExportFormat | str, exported_by: str
    ) -> AuditExport:
        """Export entries matching *query* (capped) as a signed bundle.

        Raises:
            ValueError: If *fmt* is not a supported format.
        """
        export_format = ExportFormat(fmt)
        cap = self._engine.config.audit.export_max_entries
        entries = await self.search(
            AuditQuery(
                user_id=query.user_id,
                action=query.action,
                resource=query.resource,
                start=query.start,
                end=query.end,
                ip_address=query.ip_address,
                limit=cap,
                offset=0,
            )
        )
        exported_at = self._engine.clock.now_ms()
        content = render_csv(entries) if export_format is ExportFormat.CSV else render_json(entries)
        logger.info("Audit export of %d entries by %s (%s)", len(entries), exported_by, export_format)
        return AuditExport(
            entries=entries,
            exported_at=exported_at,
            exported_by=exported_by,
            format=export_format,
            signature=self._sign(len(entries), exported_at, exported_by, export_format),
            content=content,
        )

    def verify_export(self, export: AuditExport) -> bool:
        """True if the export's signature matches its metadata."""
        expected = self._sign(
            len(export.entries), export.exported_at, export.exported_by, export.format
        )
        return constant_time_equals(expected, export.signature)

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    async def archive(self, older_than_ms: int) -> ArchiveResult:
        """Remove the chain prefix older than ``now - older_than_ms``.

        Only a contiguous prefix is removed, ending before the first entry
        at or after the cutoff. A checkpoint recording the last removed
        checksum keeps the remaining chain verifiable.
        """
        cutoff = self._engine.clock.now_ms() - older_than_ms
        async with self._writer, self._engine.datastore.session() as session:
            first_kept = (
                await session.execute(
                    select(func.min(AuditLog.sequence)).where(AuditLog.timestamp >= cutoff)
                )
            ).scalar_one_or_none()

            prefix = select(AuditLog).order_by(AuditLog.sequence.desc()).limit(1)
            if first_kept is not None:
                prefix = prefix.where(AuditLog.sequence < first_kept)
            last_archived = (await session.execute(prefix)).scalar_one_or_none()

            if last_archived is None:
                remaining = await self._count(session)
                return ArchiveResult(archived=0, remaining=remaining)

            archived_count = (
                await session.execute(
                    select(func.count(AuditLog.sequence)).where(
                        AuditLog.sequence <= last_archived.sequence
                    )
                )
            ).scalar_one()
            await session.execute(
                delete(AuditLog).where(AuditLog.sequence <= last_archived.sequence)
            )
            session.add(
                AuditCheckpoint(
                    archived_through=last_archived.sequence,
                    anchor_checksum=last_archived.checksum,
                    archived_count=archived_count,
                    created_at=self._engine.clock.now_ms(),
                )
            )
            await session.commit()
            remaining = await self._count(session)

        logger.info(
            "Archived %d audit entries through sequence %d", archived_count, last_archived.sequence
        )
        return ArchiveResult(
            archived=archived_count,
            remaining=remaining,
            anchor_checksum=last_archived.checksum,
        )

    @staticmethod
    async def _count(session: AsyncSession) -> int:
        return (await session.execute(select(func.count(AuditLog.sequence)))).scalar_one()

    async def checkpoints(self) -> list[AuditCheckpoint]:
        async with self._engine.datastore.session() as session:
            result = await session.execute(select(AuditCheckpoint).order_by(AuditCheckpoint.id))
            return list(result.scalars().all())
