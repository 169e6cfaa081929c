"""Test Yodeck credential parsing and settings."""

from __future__ import annotations

import pytest

from signage_sync.settings import InvalidCredentials, Settings, YodeckCredentials


def test_parse_label_and_secret():
    creds = YodeckCredentials.parse("  signage-bot : abcdef123  ")
    assert creds.label == "signage-bot"
    assert creds.secret == "abcdef123"
    assert creds.authorization_header == "Token signage-bot:abcdef123"


def test_secret_may_contain_colons():
    creds = YodeckCredentials.parse("bot:abc:def")
    assert creds.secret == "abc:def"


@pytest.mark.parametrize("raw, message", [
    (None, "empty or missing"),
    ("   ", "empty or missing"),
    ("no-separator", "missing colon"),
    (":secret", "label part is empty"),
    ("label:", "secret part is empty"),
])
def test_parse_rejects_malformed_tokens(raw, message):
    with pytest.raises(InvalidCredentials, match=message):
        YodeckCredentials.parse(raw)


def test_repr_and_mask_hide_secret():
    creds = YodeckCredentials.parse("bot:supersecretvalue")
    assert "supersecretvalue" not in repr(creds)
    assert creds.masked() == "bot:supe…"


def test_settings_read_env_aliases(monkeypatch):
    monkeypatch.setenv("SIGNAGE_SYNC_YODECK_AUTH_TOKEN", "alias:token")
    monkeypatch.delenv("YODECK_AUTH_TOKEN", raising=False)
    monkeypatch.setenv("UPLOAD_POLL_INTERVALS_SEC", "[1, 2]")
    settings = Settings()
    assert settings.yodeck_credentials().label == "alias"
    assert settings.upload_poll_intervals_sec == [1, 2]


def test_async_database_url_upgrades_plain_postgres(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@h:5432/db")
    assert Settings().async_database_url == "postgresql+asyncpg://u:p@h:5432/db"


def test_missing_token_raises_on_use(monkeypatch):
    monkeypatch.delenv("YODECK_AUTH_TOKEN", raising=False)
    monkeypatch.delenv("SIGNAGE_SYNC_YODECK_AUTH_TOKEN", raising=False)
    settings = Settings(_env_file=None)
    with pytest.raises(InvalidCredentials):
        settings.yodeck_credentials()
