"""Contracts for the supplier background check: response normalisation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from invoiceflow.schemas.invoice import SupplierVerification

UNAVAILABLE_SUMMARY = "Could not verify supplier."

_TRUE_WORDS = {"true", "yes", "y", "likely", "active", "legitimate"}
_FALSE_WORDS = {"false", "no", "n", "unlikely", "inactive", "not legitimate"}


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [str(item).strip() for item in value if str(item).strip()]


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def parse_verification(payload: dict[str, Any], supplier_name: str, *, live_search: bool) -> SupplierVerification:
    return SupplierVerification(
        supplier_name=supplier_name,
        summary=str(payload.get("summary") or "").strip(),
        legitimate=_as_bool(payload.get("legitimate")),
        primary_services=_as_list(payload.get("primaryServices")),
        care_relevant=_as_bool(payload.get("careRelevant")),
        sources=_as_list(payload.get("sources")),
        live_search=live_search,
        checked_at=datetime.now(timezone.utc),
    )


def unavailable(supplier_name: str, summary: str = UNAVAILABLE_SUMMARY) -> SupplierVerification:
    return SupplierVerification(
        supplier_name=supplier_name,
        summary=summary,
        available=False,
        checked_at=datetime.now(timezone.utc),
    )
