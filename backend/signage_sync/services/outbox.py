"""
Integration outbox: intent and outcome of side effects against Yodeck.

One row per idempotency key. A `succeeded` row short-circuits the action for
good; a `processing` row makes concurrent callers back off (advisory, not a
database lock); a `failed` row may be claimed again.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from signage_sync.integrations.yodeck_api import sanitize_dict, sanitize_text
from signage_sync.models import IntegrationOutbox, OutboxStatus

logger = logging.getLogger(__name__)

CLAIM_ACQUIRED = "acquired"
CLAIM_ALREADY_SUCCEEDED = "already_succeeded"
CLAIM_IN_PROGRESS = "in_progress"


def generate_idempotency_key(action_type: str, *identifiers: Any) -> str:
    raw = ":".join([action_type, *(str(i) for i in identifiers)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class ClaimResult:
    state: str
    entry: IntegrationOutbox

    @property
    def acquired(self) -> bool:
        return self.state == CLAIM_ACQUIRED


async def get_by_key(session: AsyncSession, key: str) -> IntegrationOutbox | None:
    return (await session.execute(
        select(IntegrationOutbox).where(IntegrationOutbox.idempotency_key == key)
    )).scalar_one_or_none()


def _state_of(entry: IntegrationOutbox) -> str | None:
    if entry.status == OutboxStatus.succeeded.value:
        return CLAIM_ALREADY_SUCCEEDED
    if entry.status == OutboxStatus.processing.value:
        return CLAIM_IN_PROGRESS
    return None


async def claim(
    session: AsyncSession,
    key: str,
    *,
    action_type: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    provider: str = "yodeck",
) -> ClaimResult:
    """Acquire the right to perform the action identified by `key`."""
    entry = await get_by_key(session, key)
    if entry is not None:
        state = _state_of(entry)
        if state:
            return ClaimResult(state, entry)
        # Only the caller whose update flips failed -> processing owns the retry
        result = await session.execute(
            update(IntegrationOutbox)
            .where(
                IntegrationOutbox.idempotency_key == key,
                IntegrationOutbox.status == OutboxStatus.failed.value,
            )
            .values(
                status=OutboxStatus.processing.value,
                attempts=func.coalesce(IntegrationOutbox.attempts, 0) + 1,
                error_code=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(entry)
        if not result.rowcount:
            return ClaimResult(_state_of(entry) or CLAIM_IN_PROGRESS, entry)
        logger.info(f"[outbox] re-claimed failed {action_type} key={key[:12]} attempt={entry.attempts}")
        return ClaimResult(CLAIM_ACQUIRED, entry)

    entry = IntegrationOutbox(
        provider=provider,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        idempotency_key=key,
        payload_json=payload,
        status=OutboxStatus.processing.value,
        attempts=1,
    )
    session.add(entry)
    try:
        await session.commit()
    except IntegrityError:
        # Another caller inserted the same key between our read and insert
        await session.rollback()
        existing = await get_by_key(session, key)
        if existing is None:
            raise
        return ClaimResult(_state_of(existing) or CLAIM_IN_PROGRESS, existing)
    return ClaimResult(CLAIM_ACQUIRED, entry)


async def mark_succeeded(
    session: AsyncSession,
    entry: IntegrationOutbox,
    *,
    external_id: str | None = None,
    response: dict | None = None,
) -> None:
    entry.status = OutboxStatus.succeeded.value
    entry.external_id = external_id
    entry.response_json = sanitize_dict(response) if response else None
    entry.error_code = None
    entry.last_error = None
    entry.processed_at = datetime.now(timezone.utc)
    await session.commit()


async def mark_failed(
    session: AsyncSession,
    entry: IntegrationOutbox,
    error: str,
    *,
    error_code: str | None = None,
    response: dict | None = None,
) -> None:
    if entry.status == OutboxStatus.succeeded.value:
        logger.warning(f"[outbox] refusing to mark succeeded entry {entry.id} as failed ({error_code})")
        return
    entry.status = OutboxStatus.failed.value
    entry.error_code = error_code
    entry.last_error = sanitize_text(error)
    if response:
        entry.response_json = sanitize_dict(response)
    entry.processed_at = datetime.now(timezone.utc)
    await session.commit()


async def retry_failed(session: AsyncSession, provider: str | None = None) -> int:
    """Reset attempt counters and errors on failed rows.

    Failed rows stay claimable; this only clears their history so the next
    caller with the same key starts from a clean slate.
    """
    stmt = select(IntegrationOutbox).where(IntegrationOutbox.status == OutboxStatus.failed.value)
    if provider:
        stmt = stmt.where(IntegrationOutbox.provider == provider)
    rows = list((await session.execute(stmt)).scalars().all())
    for row in rows:
        row.attempts = 0
        row.error_code = None
        row.last_error = None
    await session.commit()
    logger.info(f"[outbox] reset {len(rows)} failed entries for retry")
    return len(rows)


async def get_entity_sync_status(session: AsyncSession, entity_type: str, entity_id: str) -> dict[str, Any]:
    rows = list((await session.execute(
        select(IntegrationOutbox)
        .where(IntegrationOutbox.entity_type == entity_type, IntegrationOutbox.entity_id == str(entity_id))
        .order_by(IntegrationOutbox.created_at.desc(), IntegrationOutbox.id.desc())
    )).scalars().all())
    counts = {s.value: 0 for s in OutboxStatus}
    for row in rows:
        counts[row.status] = counts.get(row.status, 0) + 1
    latest = rows[0] if rows else None
    return {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "counts": counts,
        "latest_status": latest.status if latest else None,
        "latest_error": latest.last_error if latest else None,
    }


async def get_outbox_stats(session: AsyncSession) -> dict[str, Any]:
    rows = (await session.execute(
        select(IntegrationOutbox.provider, IntegrationOutbox.status, func.count(IntegrationOutbox.id))
        .group_by(IntegrationOutbox.provider, IntegrationOutbox.status)
    )).all()
    by_provider: dict[str, dict[str, int]] = {}
    totals = {s.value: 0 for s in OutboxStatus}
    for provider, status, count in rows:
        by_provider.setdefault(provider, {})[status] = count
        totals[status] = totals.get(status, 0) + count
    return {"total": sum(totals.values()), "by_status": totals, "by_provider": by_provider}
