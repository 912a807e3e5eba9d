"""Test helpers for the insight layer test suite"""

from tests.helpers.insight_stubs import (
    BASE_MS,
    MINUTE_MS,
    FakeClock,
    FakeMonotonic,
    asset_rows,
    balanced_context,
    concentrated_context,
    contract_json,
)

__all__ = [
    "BASE_MS",
    "MINUTE_MS",
    "FakeClock",
    "FakeMonotonic",
    "asset_rows",
    "balanced_context",
    "concentrated_context",
    "contract_json",
]
