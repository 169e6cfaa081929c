#!/usr/bin/env python3
"""
Smoke test for the publish core against a running instance and a real Yodeck
account.

Resolves an advertiser's canonical media, publishes it to one playlist twice
(the second run must be a no-op), then rolls it back twice (the second
rollback must find nothing to remove).

Env vars:
  BASE_URL        (default http://localhost:8000)
  ADVERTISER_ID   (required) advertiser with at least one uploadable asset
  PLAYLIST_ID     (required) a scratch playlist, it is modified
  LOCATION_ID     (default smoke-location)
"""
from __future__ import annotations

import json
import os
import sys
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
ADVERTISER_ID = os.environ.get("ADVERTISER_ID", "")
PLAYLIST_ID = os.environ.get("PLAYLIST_ID", "")
LOCATION_ID = os.environ.get("LOCATION_ID", "smoke-location")

PLAN_KEY = f"smoke_{int(time.time())}"

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _req(method: str, path: str, body: dict | None = None) -> dict:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body is not None else None
    req = Request(url, data=data, headers={"Content-Type": "application/json"}, method=method)
    try:
        with urlopen(req, timeout=600) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raise SmokeError(f"{method} {path} → {e.code}: {e.read().decode()[:500]}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def GET(path: str) -> dict:
    return _req("GET", path)


def POST(path: str, body: dict | None = None) -> dict:
    return _req("POST", path, body)


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


def _targets() -> list[dict]:
    return [{"location_id": LOCATION_ID, "playlist_id": int(PLAYLIST_ID)}]


# ── Steps ────────────────────────────────────────────────────

def step1_health():
    step("1. Health + Yodeck auth")
    GET("/ping")
    auth = GET("/api/publish/yodeck/auth-status")
    if not auth.get("ok"):
        fail(f"Yodeck auth failed: status={auth.get('status')} error={auth.get('error')}")
    ok(f"Token {auth.get('token_preview')} accepted ({auth.get('screen_count')} screens)")


def step2_resolve() -> int:
    step("2. Resolve canonical media")
    result = POST(f"/api/publish/advertisers/{ADVERTISER_ID}/canonical-media")
    if not result.get("ok"):
        steps = [s.get("step") for s in result.get("diagnostics", {}).get("steps", [])]
        fail(f"Resolution failed: {result.get('error')} steps={steps}")
    ok(f"Media #{result['remote_media_id']} via {result['source']}")
    return result["remote_media_id"]


def step3_publish(media_id: int):
    step("3. Publish (twice, same plan key)")
    body = {"media_id": media_id, "plan_key": PLAN_KEY, "targets": _targets()}
    first = POST("/api/publish/publish", body)
    if first["status"] != "published":
        fail(f"Publish status {first['status']}: {first['targets']}")
    ok(f"Published to playlist {PLAYLIST_ID} ({first['targets'][0]['item_count']} items)")

    second = POST("/api/publish/publish", body)
    if second["status"] != "published":
        fail(f"Repeat publish status {second['status']}")
    ok("Repeat publish short-circuited by the outbox")


def step4_rollback(media_id: int):
    step("4. Rollback (twice)")
    body = {"media_id": media_id, "targets": _targets()}
    first = POST("/api/publish/rollback", body)
    if first["removed"] != 1:
        fail(f"Expected one removal, got {first}")
    ok("Removed from playlist")

    second = POST("/api/publish/rollback", body)
    if second["not_present"] != 1 or second["failed"]:
        fail(f"Second rollback not a no-op: {second}")
    ok("Second rollback was a no-op")


def step5_report(media_id: int):
    step("5. Report")
    jobs = GET(f"/api/publish/upload-jobs?advertiser_id={ADVERTISER_ID}&limit=5")
    stats = GET("/api/publish/outbox/stats")
    print(f"  media={media_id} plan_key={PLAN_KEY}")
    for job in jobs:
        print(f"  job #{job['id']} {job['correlation_id']} {job['status']} {job.get('error_code') or ''}")
    print(f"  outbox: {stats['by_status']}")


# ── Main ─────────────────────────────────────────────────────

def main():
    print(f"\n🔬 Publish smoke test: {BASE_URL}")
    if not ADVERTISER_ID or not PLAYLIST_ID:
        print("  ADVERTISER_ID and PLAYLIST_ID are required")
        sys.exit(2)

    try:
        step1_health()
        media_id = step2_resolve()
        step3_publish(media_id)
        step4_rollback(media_id)
        step5_report(media_id)
    except SmokeError as e:
        print(f"\n{'='*60}")
        print(f"  ❌ FAIL: {e}")
        print(f"{'='*60}\n")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n  ⏹ Interrupted")
        sys.exit(130)

    print("\n  RESULT:  ✅ PASS\n")


if __name__ == "__main__":
    main()
