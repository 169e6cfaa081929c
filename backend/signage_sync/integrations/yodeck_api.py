"""
Yodeck REST API v2 client.

All calls return a `YodeckResponse`: HTTP errors and transport failures are
reported, never raised. Response shapes are inconsistent across endpoints
(the same concept appears under several field names), so every record is
passed through one of the `normalize_*` adapters below before any other
module reads it.

Auth: `Authorization: Token <label>:<secret>` (see `YodeckCredentials`).
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from signage_sync.settings import Settings, YodeckCredentials, get_settings

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://app.yodeck.com/api/v2"


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Token\s+[A-Za-z0-9\-_\.:]+", re.IGNORECASE), "Token ***"),
    (re.compile(r"X-Amz-Signature=[A-Za-z0-9%]+", re.IGNORECASE), "X-Amz-Signature=***"),
    (re.compile(r"X-Amz-Credential=[A-Za-z0-9%/\-_]+", re.IGNORECASE), "X-Amz-Credential=***"),
]

_SENSITIVE_KEYS = {"authorization", "token", "api_key", "apikey", "secret", "cookie", "set-cookie"}


def sanitize_text(text: str | None) -> str | None:
    """Strip credentials and presigned signatures from log/error text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_dict(d: Any) -> Any:
    """Remove sensitive keys from a response snapshot before persisting."""
    if isinstance(d, list):
        return [sanitize_dict(v) for v in d]
    if not isinstance(d, dict):
        return d
    cleaned = {}
    for k, v in d.items():
        if str(k).lower() in _SENSITIVE_KEYS:
            cleaned[k] = "***"
        elif isinstance(v, (dict, list)):
            cleaned[k] = sanitize_dict(v)
        elif isinstance(v, str):
            cleaned[k] = sanitize_text(v)
        else:
            cleaned[k] = v
    return cleaned


# ── Response normalization ───────────────────────────────────

MEDIA_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "media_id", "mediaId"),
    "name": ("name", "title"),
    "status": ("status", "state"),
    "file_size": ("filesize", "file_size", "fileSize"),
    "last_uploaded": ("last_uploaded", "lastUploaded"),
    "thumbnail_url": ("thumbnail_url", "thumbnailUrl", "thumbnail"),
    "media_origin": ("media_origin", "mediaOrigin", "origin"),
    "file_extension": ("file_extension", "fileExtension", "extension"),
    "error_message": ("error_message", "errorMessage", "error"),
}

FILE_URL_ALIASES = ("url", "file_url", "download_url")
PLAYLIST_ITEMS_ALIASES = ("items", "playlist_items", "media")
SCREEN_CONTENT_ALIASES = ("screen_content", "screencontent")
SOURCE_TYPE_ALIASES = ("source_type", "sourcetype", "sourceType")
SOURCE_ID_ALIASES = ("source_id", "sourceid", "sourceId")
SOURCE_NAME_ALIASES = ("source_name", "sourcename", "sourceName")
CREATE_UPLOAD_URL_ALIASES = ("get_upload_url", "presign_url", "upload_url")
PRESIGNED_URL_ALIASES = ("upload_url", "presign_url", "url")


def first_alias(raw: dict | None, aliases: tuple[str, ...]) -> Any:
    """Return the first non-empty value found under any alias."""
    if not isinstance(raw, dict):
        return None
    for key in aliases:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def normalize_media(raw: dict | None) -> dict[str, Any]:
    """Canonical media record shape used by every downstream consumer."""
    raw = raw if isinstance(raw, dict) else {}
    media: dict[str, Any] = {key: first_alias(raw, aliases) for key, aliases in MEDIA_FIELD_ALIASES.items()}
    media["status"] = str(media["status"] or "").strip().lower()
    media["file_size"] = _to_int(media["file_size"])

    file_obj = raw.get("file")
    media["file"] = file_obj if isinstance(file_obj, dict) and file_obj else None
    media["file_url"] = first_alias(media["file"], FILE_URL_ALIASES) if media["file"] else None
    media["raw"] = raw
    return media


def _playlist_item_media_id(item: dict) -> Any:
    inner = item.get("item")
    if isinstance(inner, dict):
        return inner.get("id")
    if inner is not None:
        return inner
    return first_alias(item, ("media_id", "mediaId", "id"))


def normalize_playlist_items(raw: dict | list | None) -> list[dict[str, Any]]:
    """Flatten playlist items to `{media_id, item_id, order, type, duration}`.

    Items come in two shapes: `{"item": {"id": 5}}` and `{"item": 5}`; the
    flat `{"id": 5}` form is read as a media id only when `item` is absent.
    """
    if isinstance(raw, list):
        items = raw
    else:
        items = first_alias(raw, PLAYLIST_ITEMS_ALIASES) or []
    if not isinstance(items, list):
        return []

    normalized = []
    for item in items:
        if not isinstance(item, dict):
            continue
        inner = item.get("item") if isinstance(item.get("item"), dict) else {}
        media_id = _playlist_item_media_id(item)
        normalized.append({
            "media_id": _to_int(media_id) if media_id is not None else None,
            "item_id": item.get("id") if item.get("item") is not None else None,
            "order": item.get("order"),
            "type": str(item.get("type") or inner.get("type") or "media").lower(),
            "duration": item.get("duration"),
        })
    return normalized


def normalize_screen(raw: dict | None) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    content = first_alias(raw, SCREEN_CONTENT_ALIASES)
    content = content if isinstance(content, dict) else {}
    source_type = first_alias(content, SOURCE_TYPE_ALIASES) or first_alias(raw, SOURCE_TYPE_ALIASES)
    source_id = first_alias(content, SOURCE_ID_ALIASES) or first_alias(raw, SOURCE_ID_ALIASES)
    return {
        "id": raw.get("id"),
        "name": raw.get("name"),
        "source_type": str(source_type).lower() if source_type else None,
        "source_id": _to_int(source_id) if source_id is not None else None,
        "source_name": first_alias(content, SOURCE_NAME_ALIASES),
    }


def upload_url_from_create(raw: dict | None) -> str | None:
    value = first_alias(raw, CREATE_UPLOAD_URL_ALIASES)
    return value if isinstance(value, str) else None


def presigned_url_from(raw: dict | None) -> str | None:
    value = first_alias(raw, PRESIGNED_URL_ALIASES)
    return value if isinstance(value, str) else None


# ── Create payload ───────────────────────────────────────────

# Presigned uploads are rejected (err_1003 invalid_field) when any of these appear
FORBIDDEN_CREATE_KEYS = frozenset({
    "media_origin", "media_type", "origin", "type", "source", "mime_type",
    "file_type", "content_type", "upload_method", "url_type",
})


def assert_no_forbidden_keys(payload: dict, context: str) -> None:
    forbidden = sorted(k for k in payload if k.lower() in FORBIDDEN_CREATE_KEYS)
    if forbidden:
        raise ValueError(f"{context}: create payload contains forbidden keys: {', '.join(forbidden)}")


def build_create_media_payload(name: str, *, include_optional: bool = False) -> dict[str, Any]:
    """Minimal create-media payload for the presigned upload flow."""
    payload: dict[str, Any] = {"name": name}
    if include_optional:
        payload["description"] = ""
        payload["arguments"] = {"buffering": True, "resolution": "highest"}
    assert_no_forbidden_keys(payload, "build_create_media_payload")
    return payload


# ── Client ───────────────────────────────────────────────────

@dataclass
class YodeckResponse:
    ok: bool
    status: int
    data: Any = None
    error: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def body(self) -> dict:
        return self.data if isinstance(self.data, dict) else {}

    def snapshot(self) -> dict[str, Any]:
        """Sanitized response snapshot for persistence."""
        snap: dict[str, Any] = {"status": self.status}
        if self.data is not None:
            snap["body"] = sanitize_dict(self.data)
        if self.error:
            snap["error"] = sanitize_text(self.error)
        return snap


def _parse_body(resp: httpx.Response) -> Any:
    if resp.status_code == 204 or not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return {"raw_text": resp.text[:500]}


class YodeckClient:
    """Thin async wrapper around one shared `httpx.AsyncClient`."""

    def __init__(
        self,
        credentials: YodeckCredentials,
        *,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_backoff_sec: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "YodeckClient":
        settings = settings or get_settings()
        return cls(
            settings.yodeck_credentials(),
            base_url=settings.yodeck_api_base,
            timeout=settings.yodeck_request_timeout_sec,
            max_retries=settings.yodeck_max_retries,
            transport=transport,
        )

    async def __aenter__(self) -> "YodeckClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── URL helpers ──────────────────────────────────────────

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def absolute_url(self, endpoint: str) -> str:
        """Resolve an endpoint returned by the API itself.

        Origin-relative (`/api/v2/...`) and base-relative (`media/1/...`)
        forms both occur.
        """
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if endpoint.startswith("/"):
            base = httpx.URL(self.base_url)
            return f"{base.scheme}://{base.netloc.decode()}{endpoint}"
        return f"{self.base_url}/{endpoint}"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": self.credentials.authorization_header,
            "Accept": "application/json",
        }

    # ── Core request ─────────────────────────────────────────

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> YodeckResponse:
        url = self.url(path)
        headers = self._auth_headers()
        attempt = 0
        while True:
            try:
                resp = await self._http.request(method, url, json=json, params=params, headers=headers)
            except httpx.TimeoutException as exc:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.warning(f"[yodeck] {method} {path} timed out, retry {attempt}/{self.max_retries}")
                    await asyncio.sleep(self.retry_backoff_sec * attempt)
                    continue
                return YodeckResponse(ok=False, status=0, error=f"timeout: {exc}")
            except httpx.HTTPError as exc:
                logger.warning(f"[yodeck] {method} {path} transport error: {exc}")
                return YodeckResponse(ok=False, status=0, error=sanitize_text(f"transport error: {exc}"))

            if resp.status_code == 429 and attempt < self.max_retries:
                delay = self.retry_backoff_sec * (2 ** attempt)
                attempt += 1
                logger.info(f"[yodeck] rate limited on {method} {path}, waiting {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            data = _parse_body(resp)
            resp_headers = dict(resp.headers)
            if not resp.is_success:
                return YodeckResponse(
                    ok=False,
                    status=resp.status_code,
                    data=data,
                    error=sanitize_text(f"HTTP {resp.status_code}: {resp.text[:300]}"),
                    headers=resp_headers,
                )
            return YodeckResponse(ok=True, status=resp.status_code, data=data, headers=resp_headers)

    # ── Media ────────────────────────────────────────────────

    async def create_media(self, payload: dict[str, Any]) -> YodeckResponse:
        return await self.request("POST", "/media/", json=payload)

    async def get_media(self, media_id: int) -> YodeckResponse:
        return await self.request("GET", f"/media/{media_id}/")

    async def delete_media(self, media_id: int) -> YodeckResponse:
        return await self.request("DELETE", f"/media/{media_id}/")

    async def search_media(self, term: str, *, limit: int = 50) -> YodeckResponse:
        return await self.request("GET", "/media/", params={"search": term, "limit": limit})

    async def get_upload_url(self, endpoint: str) -> YodeckResponse:
        return await self.request("GET", self.absolute_url(endpoint))

    async def post_json(self, url: str, body: dict[str, Any] | None = None) -> YodeckResponse:
        return await self.request("POST", url, json=body or {})

    async def put_bytes(self, url: str, data: bytes, *, content_type: str = "video/mp4") -> YodeckResponse:
        """PUT raw bytes to a presigned storage URL (no API auth header)."""
        headers = {"Content-Type": content_type, "Content-Length": str(len(data))}
        try:
            resp = await self._http.put(url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            return YodeckResponse(ok=False, status=0, error=sanitize_text(f"{type(exc).__name__}: {exc}"))
        body = resp.text[:500] if resp.content else ""
        return YodeckResponse(
            ok=resp.is_success,
            status=resp.status_code,
            data={"raw_text": body} if body else None,
            error=None if resp.is_success else sanitize_text(f"HTTP {resp.status_code}: {body[:300]}"),
            headers=dict(resp.headers),
        )

    # ── Playlists ────────────────────────────────────────────

    async def get_playlist(self, playlist_id: int) -> YodeckResponse:
        return await self.request("GET", f"/playlists/{playlist_id}/")

    async def replace_playlist_items(self, playlist_id: int, items: list[dict[str, Any]]) -> YodeckResponse:
        """The API only supports whole-list replacement of playlist items."""
        return await self.request("PATCH", f"/playlists/{playlist_id}/", json={"items": items})

    async def search_playlists(self, name: str) -> YodeckResponse:
        return await self.request("GET", "/playlists/", params={"search": name})

    # ── Screens ──────────────────────────────────────────────

    async def list_screens(self) -> YodeckResponse:
        return await self.request("GET", "/screens/")

    async def get_screen(self, screen_id: int | str) -> YodeckResponse:
        return await self.request("GET", f"/screens/{screen_id}/")

    async def patch_screen_content(self, screen_id: int | str, playlist_id: int) -> YodeckResponse:
        return await self.request(
            "PATCH",
            f"/screens/{screen_id}/",
            json={"screen_content": {"source_type": "playlist", "source_id": playlist_id}},
        )

    async def validate_auth(self) -> dict[str, Any]:
        """Probe `/screens/` to confirm the token is accepted."""
        result = await self.list_screens()
        report: dict[str, Any] = {
            "ok": result.ok,
            "status": result.status,
            "token_preview": self.credentials.masked(),
            "base_url": self.base_url,
            "probe_endpoint": "/screens/",
        }
        if result.ok:
            report["screen_count"] = result.body.get("count")
        else:
            report["error"] = result.error
        return report


def results_list(data: Any) -> list[dict]:
    """Extract the item list from a paginated or bare-list response."""
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict):
        raw = data.get("results")
        if isinstance(raw, list):
            return [d for d in raw if isinstance(d, dict)]
    return []
