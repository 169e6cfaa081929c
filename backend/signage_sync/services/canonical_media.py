"""
Canonical media resolution.

Guarantees an advertiser has exactly one usable Yodeck media reference, or a
clearly diagnosed failure on the advertiser row. Strategies run in order and
the first success wins:

    existing_canonical -> yodeck_search -> upload -> url_clone -> exhausted

A failing strategy is recoverable (the next one runs); only exhaustion is
written back as a publish failure. Re-running `resolve` is safe because the
existing reference is re-validated first.

Canonical updates are last-writer-wins: two concurrent resolutions for the
same advertiser may both write, and the later commit is kept.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signage_sync.integrations.yodeck_api import YodeckClient, normalize_media, results_list
from signage_sync.models import AdAsset, Advertiser, CanonicalSource
from signage_sync.services.notify import notify_error
from signage_sync.services.readiness import is_ready_status, is_video_media, validate_remote_media
from signage_sync.services.upload_coordinator import (
    PollPolicy,
    TransactionalUploadCoordinator,
    new_correlation_id,
    poll_until_ready,
)
from signage_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

RESOLUTION_FAILED_CODE = "CANONICAL_RESOLUTION_FAILED"
FIXED_SEARCH_PREFIXES = ("EVZ-AD-", "EVZ-PURE-")
_VIDEO_EXT_RE = re.compile(r"\.(mp4|mov|avi|webm)$", re.IGNORECASE)


@dataclass
class ResolveResult:
    ok: bool
    remote_media_id: int | None
    source: str
    diagnostics: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "remote_media_id": self.remote_media_id,
            "source": self.source,
            "error": self.error,
            "diagnostics": self.diagnostics,
        }


@dataclass
class ScoredCandidate:
    id: int
    name: str
    status: str
    score: int
    matched_pattern: str


# ── Pure helpers ─────────────────────────────────────────────

def company_slug(company_name: str | None) -> str:
    return re.sub(r"[^A-Z0-9]", "", (company_name or "").upper())[:30]


def build_search_patterns(advertiser: Advertiser, assets: list[AdAsset]) -> list[str]:
    patterns: list[str] = []
    for asset in assets:
        if asset.stored_filename:
            patterns.append(asset.stored_filename)
        if asset.original_file_name:
            patterns.append(asset.original_file_name)
    slug = company_slug(advertiser.company_name)
    if slug:
        patterns.append(f"ADV-{slug}")
        patterns.extend(FIXED_SEARCH_PREFIXES)
    if advertiser.link_key:
        patterns.append(advertiser.link_key)
    return [p for p in dict.fromkeys(patterns) if p]


def search_terms(patterns: list[str]) -> list[str]:
    terms = []
    for pattern in patterns:
        base = _VIDEO_EXT_RE.sub("", pattern)
        if len(base) >= 3:
            terms.append(base[:50])
    return list(dict.fromkeys(terms))


def score_candidates(candidates: list[dict[str, Any]], patterns: list[str]) -> list[ScoredCandidate]:
    """Name-match score per normalized media record; non-video records dropped.

    Exact base-name match 100, containment 70, 8-char prefix 40; then +20 for
    a ready status and +5 for a positive size. Ties keep search order.
    """
    lowered = [p.lower() for p in patterns]
    scored = []
    for media in candidates:
        if not media.get("id") or not is_video_media(media):
            continue
        name = str(media.get("name") or "").lower()
        name_base = _VIDEO_EXT_RE.sub("", name)
        best, matched = 0, ""
        for pattern in lowered:
            base = _VIDEO_EXT_RE.sub("", pattern)
            if name_base == base:
                score = 100
            elif base in name or (name_base and name_base in base):
                score = 70
            elif pattern[:8] in name:
                score = 40
            else:
                continue
            if score > best:
                best, matched = score, pattern
        if best == 0:
            continue
        if is_ready_status(media.get("status")):
            best += 20
        if int(media.get("file_size") or 0) > 0:
            best += 5
        scored.append(ScoredCandidate(int(media["id"]), media.get("name") or "", media.get("status") or "", best, matched))
    return sorted(scored, key=lambda c: -c.score)


def choose_best_asset(assets: list[AdAsset]) -> AdAsset | None:
    """Validated beats approved beats newest; only assets with a source qualify."""
    usable = [a for a in assets if a.storage_path or a.converted_storage_path or a.storage_url]
    if not usable:
        return None

    def rank(asset: AdAsset) -> tuple[int, float]:
        score = (10 if asset.validation_status == "valid" else 0) + (5 if asset.approval_status == "APPROVED" else 0)
        created = asset.created_at.timestamp() if asset.created_at else 0.0
        return score, created

    return max(usable, key=rank)


# ── Resolver ─────────────────────────────────────────────────

class CanonicalMediaResolver:
    def __init__(
        self,
        session: AsyncSession,
        client: YodeckClient,
        uploader: TransactionalUploadCoordinator,
        *,
        settings: Settings | None = None,
    ):
        self.session = session
        self.client = client
        self.uploader = uploader
        self.settings = settings or get_settings()

    async def resolve(self, advertiser_id: str) -> ResolveResult:
        cid = new_correlation_id("CAN")
        diagnostics: dict[str, Any] = {"correlation_id": cid, "advertiser_id": advertiser_id, "steps": []}

        advertiser = await self.session.get(Advertiser, advertiser_id)
        if advertiser is None:
            return ResolveResult(False, None, CanonicalSource.none.value, diagnostics, error="ADVERTISER_NOT_FOUND")

        assets = list((await self.session.execute(
            select(AdAsset).where(AdAsset.advertiser_id == advertiser_id).order_by(AdAsset.created_at)
        )).scalars().all())
        logger.info(f"[canonical][{cid}] resolve advertiser={advertiser_id} assets={len(assets)}")

        media_id = await self._try_existing(advertiser, diagnostics)
        if media_id:
            return await self._succeed(advertiser, media_id, CanonicalSource.existing_canonical, diagnostics)

        media_id = await self._try_search(advertiser, assets, diagnostics)
        if media_id:
            return await self._succeed(advertiser, media_id, CanonicalSource.yodeck_search, diagnostics)

        asset = choose_best_asset(assets)
        if asset is None:
            diagnostics["steps"].append({"step": "no_uploadable_assets"})
        else:
            media_id = await self._try_upload(advertiser, asset, diagnostics)
            if media_id:
                return await self._succeed(advertiser, media_id, CanonicalSource.upload, diagnostics)
            # a failed upload may have rolled the session back
            await self.session.refresh(advertiser)
            await self.session.refresh(asset)

            media_id = await self._try_url_clone(advertiser, asset, diagnostics)
            if media_id:
                return await self._succeed(advertiser, media_id, CanonicalSource.url_clone, diagnostics)

        return await self._exhausted(advertiser, diagnostics)

    # ── Validation ───────────────────────────────────────────

    async def validate_media(self, media_id: int) -> tuple[bool, str, dict | None]:
        result = await self.client.get_media(media_id)
        if result.status == 404:
            return False, "NOT_FOUND_404", None
        if not result.ok:
            return False, result.error or f"INSPECT_FAILED_{result.status}", None
        media = normalize_media(result.data)
        valid, reason = validate_remote_media(media)
        return valid, reason, media

    # ── Strategies ───────────────────────────────────────────

    async def _try_existing(self, advertiser: Advertiser, diagnostics: dict) -> int | None:
        media_id = advertiser.yodeck_media_id_canonical
        if not media_id:
            return None
        diagnostics["steps"].append({"step": "check_existing_canonical", "media_id": media_id})
        valid, reason, media = await self.validate_media(media_id)
        if valid:
            diagnostics["steps"].append({"step": "existing_canonical_valid", "media_id": media_id})
            return media_id
        diagnostics["steps"].append({
            "step": "existing_canonical_invalid",
            "media_id": media_id,
            "reason": reason,
            "status": media["status"] if media else None,
        })
        return None

    async def _try_search(self, advertiser: Advertiser, assets: list[AdAsset], diagnostics: dict) -> int | None:
        patterns = build_search_patterns(advertiser, assets)
        terms = search_terms(patterns)
        diagnostics["search_patterns"] = patterns
        diagnostics["steps"].append({"step": "yodeck_search", "pattern_count": len(patterns), "term_count": len(terms)})
        if not terms:
            return None

        found: dict[int, dict] = {}
        for term in terms:
            result = await self.client.search_media(term, limit=50)
            if not result.ok:
                logger.warning(f"[canonical][{diagnostics['correlation_id']}] search failed for {term!r}: {result.status}")
                continue
            for raw in results_list(result.data):
                media = normalize_media(raw)
                if media["id"] and int(media["id"]) not in found:
                    found[int(media["id"])] = media

        scored = score_candidates(list(found.values()), patterns)
        diagnostics["search_results"] = len(found)
        diagnostics["scored_candidates"] = len(scored)
        diagnostics["top_candidates"] = [
            {"id": c.id, "name": c.name, "score": c.score, "status": c.status, "matched_pattern": c.matched_pattern}
            for c in scored[:5]
        ]

        for candidate in scored:
            valid, reason, _ = await self.validate_media(candidate.id)
            if valid:
                diagnostics["steps"].append({
                    "step": "yodeck_search_found", "media_id": candidate.id, "name": candidate.name, "score": candidate.score,
                })
                return candidate.id
            diagnostics["steps"].append({"step": "candidate_invalid", "media_id": candidate.id, "reason": reason})

        diagnostics["steps"].append({"step": "yodeck_search_no_valid_candidates"})
        return None

    async def _try_upload(self, advertiser: Advertiser, asset: AdAsset, diagnostics: dict) -> int | None:
        storage_path = asset.converted_storage_path or asset.storage_path
        if not storage_path:
            return None
        filename = asset.stored_filename or asset.original_file_name or f"EVZ-AD-{advertiser.id[:8]}.mp4"
        size = asset.converted_size_bytes or asset.size_bytes or None
        diagnostics["steps"].append({
            "step": "upload_attempt", "asset_id": asset.id, "storage_path": storage_path, "filename": filename, "file_size": size,
        })
        try:
            result = await self.uploader.upload(
                storage_path,
                filename,
                size,
                advertiser_id=advertiser.id,
                correlation_id=f"{diagnostics['correlation_id']}-UP",
            )
        except Exception as exc:
            logger.exception(f"[canonical][{diagnostics['correlation_id']}] upload raised")
            diagnostics["steps"].append({"step": "upload_error", "error": str(exc)})
            return None

        if result.ok and result.remote_media_id:
            diagnostics["steps"].append({"step": "upload_success", "media_id": result.remote_media_id, "job_id": result.job_id})
            return result.remote_media_id
        diagnostics["steps"].append({
            "step": "upload_failed",
            "error_code": result.error_code,
            "final_state": result.final_state,
            "job_id": result.job_id,
        })
        return None

    async def _try_url_clone(self, advertiser: Advertiser, asset: AdAsset, diagnostics: dict) -> int | None:
        url = asset.storage_url or asset.converted_storage_url
        if not url:
            return None
        cid = diagnostics["correlation_id"]
        filename = asset.stored_filename or asset.original_file_name or f"EVZ-AD-{advertiser.id[:8]}.mp4"
        name = _VIDEO_EXT_RE.sub("", filename) + ".mp4"
        diagnostics["steps"].append({"step": "url_clone_attempt", "url": url[:80]})

        created = await self.client.create_media({
            "name": name,
            "media_origin": {"type": "video", "source": "url", "format": None},
            "arguments": {"download_from_url": url},
        })
        media_id = created.body.get("id") if created.ok else None
        if not media_id:
            diagnostics["steps"].append({"step": "url_clone_create_failed", "status": created.status, "error": created.error})
            return None

        media_id = int(media_id)
        logger.info(f"[canonical][{cid}] url clone created media={media_id}, polling")
        outcome = await poll_until_ready(self.client, media_id, PollPolicy.clone(self.settings), tag=f"clone][{cid}")
        if outcome.ready:
            diagnostics["steps"].append({"step": "url_clone_success", "media_id": media_id})
            return media_id
        diagnostics["steps"].append({
            "step": "url_clone_not_ready", "media_id": media_id, "reason": outcome.reason, "last_status": outcome.last_status,
        })
        return None

    # ── Outcomes ─────────────────────────────────────────────

    async def _succeed(
        self, advertiser: Advertiser, media_id: int, source: CanonicalSource, diagnostics: dict
    ) -> ResolveResult:
        advertiser.yodeck_media_id_canonical = media_id
        advertiser.canonical_updated_at = datetime.now(timezone.utc)
        advertiser.canonical_source = source.value
        advertiser.asset_status = "live"
        advertiser.publish_error_code = None
        advertiser.publish_error_message = None
        advertiser.publish_failed_at = None
        await self.session.commit()
        logger.info(f"[canonical][{diagnostics['correlation_id']}] resolved media={media_id} via {source.value}")
        return ResolveResult(True, media_id, source.value, diagnostics)

    async def _exhausted(self, advertiser: Advertiser, diagnostics: dict) -> ResolveResult:
        diagnostics["steps"].append({"step": "all_strategies_exhausted"})
        message = f"No usable Yodeck media found or created. {len(diagnostics['steps'])} steps tried."
        advertiser.asset_status = "publish_failed"
        advertiser.publish_error_code = RESOLUTION_FAILED_CODE
        advertiser.publish_error_message = message
        advertiser.publish_failed_at = datetime.now(timezone.utc)
        await self.session.commit()
        logger.error(f"[canonical][{diagnostics['correlation_id']}] exhausted for advertiser={advertiser.id}: {message}")
        await notify_error(f"Canonical media resolution failed: {advertiser.company_name}", message)
        return ResolveResult(False, None, CanonicalSource.none.value, diagnostics, error=RESOLUTION_FAILED_CODE)
