"""Test helpers for the cycle investor test suite"""

from tests.helpers.cycle_stubs import (
    HOUR_MS,
    T0,
    InMemoryCycleStore,
    StubSource,
    make_asset,
    make_cycle,
    make_position,
)

__all__ = [
    "HOUR_MS",
    "T0",
    "InMemoryCycleStore",
    "StubSource",
    "make_asset",
    "make_cycle",
    "make_position",
]
