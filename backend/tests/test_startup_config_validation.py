from __future__ import annotations

import pytest


@pytest.mark.asyncio
async def test_startup_fails_fast_on_config_errors_in_production(monkeypatch):
    from invoiceflow import main as app_main

    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["missing secret"])

    with pytest.raises(RuntimeError, match="Configuration validation failed in production environment"):
        await app_main._startup_jobs()


@pytest.mark.asyncio
async def test_startup_logs_warning_only_on_config_errors_in_test(monkeypatch):
    from invoiceflow import main as app_main

    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["missing secret"])

    await app_main._startup_jobs()


def test_validate_required_config_reports_missing_pieces():
    from conftest import make_settings

    errors = make_settings(ai_providers_raw="openai", openai_api_key="", smtp_host="smtp.example.test").validate_required_config()

    assert "No reasoning provider API key configured (AI_PROVIDERS)" in errors
    assert "DATABASE_URL is not configured" in errors
    assert "SMTP_FROM_EMAIL is required when SMTP_HOST is set" in errors
    assert make_settings(database_url="sqlite://").validate_required_config() == []
