from functools import lru_cache
from datetime import date
import json
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip().lower() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip().lower() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip().lower() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    environment: str = "development"
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    # Reasoning providers
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    xai_api_key: str = ""
    perplexity_api_key: str = ""

    ai_providers_raw: str = Field(
        default="openai,claude,xai,perplexity",
        validation_alias=AliasChoices("AI_PROVIDERS", "ai_providers_raw"),
    )
    ai_complex_provider_order_raw: str = Field(
        default="openai,xai",
        validation_alias=AliasChoices("AI_COMPLEX_PROVIDER_ORDER", "ai_complex_provider_order_raw"),
    )
    ai_tier_models_raw: str = Field(
        default="",
        validation_alias=AliasChoices("AI_TIER_MODELS", "ai_tier_models_raw"),
    )
    ai_timeout_seconds: float = 60.0
    ai_temperature: float = 0.2
    ai_max_tokens: int = 4096
    ai_debug_store_raw: bool = False

    audit_retry_cooldown_seconds: float = Field(default=5.0, ge=0)
    budget_warning_ratio: float = Field(default=0.9, gt=0, le=1)
    audit_reference_date: Optional[date] = None
    enable_spending_analysis: bool = True
    reference_data_path: str = ""

    # Email gateway
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = ""

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED", "pii_redaction_enabled"),
    )
    pii_redaction_fields_raw: str = Field(
        default="email,phone,address,supplier_abn,to",
        validation_alias=AliasChoices("PII_REDACTION_FIELDS", "pii_redaction_fields_raw"),
    )

    @field_validator("audit_reference_date", mode="before")
    @classmethod
    def _blank_date(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @property
    def ai_providers(self) -> list[str]:
        return _parse_list_value(self.ai_providers_raw)

    @property
    def ai_complex_provider_order(self) -> list[str]:
        return _parse_list_value(self.ai_complex_provider_order_raw)

    @property
    def ai_tier_models(self) -> dict[str, dict[str, str]]:
        raw = (self.ai_tier_models_raw or "").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        result: dict[str, dict[str, str]] = {}
        for provider, table in parsed.items():
            if isinstance(table, dict):
                result[str(provider).lower()] = {str(k).upper(): str(v) for k, v in table.items() if v}
        return result

    @property
    def pii_redaction_fields(self) -> list[str]:
        return _parse_list_value(self.pii_redaction_fields_raw)

    @property
    def provider_api_keys(self) -> dict[str, str]:
        return {
            "openai": self.openai_api_key.strip(),
            "claude": self.anthropic_api_key.strip(),
            "xai": self.xai_api_key.strip(),
            "perplexity": self.perplexity_api_key.strip(),
        }

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_from_email)

    def validate_required_config(self) -> list[str]:
        errors: list[str] = []
        keys = self.provider_api_keys
        if "mock" not in self.ai_providers and not any(keys.get(name) for name in self.ai_providers):
            errors.append("No reasoning provider API key configured (AI_PROVIDERS)")
        if not self.database_url:
            errors.append("DATABASE_URL is not configured")
        if self.smtp_host and not self.smtp_from_email:
            errors.append("SMTP_FROM_EMAIL is required when SMTP_HOST is set")
        return errors


@lru_cache

def get_settings() -> Settings:
    return Settings()
