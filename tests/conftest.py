"""Shared test fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from sweep.client import empty_filter
from sweep.config import RunConfig
from sweep.coordinator import Coordinator


class FakeClient:
    """In-memory stand-in for a fleet client that records every call."""

    def __init__(self, filter: dict[str, list[Any]] | None = None) -> None:
        self.filter = filter if filter is not None else empty_filter()
        self.progress = True
        self.calls: list[tuple[Any, ...]] = []
        self.discovered: list[str] = []
        self.runonce_responses: list[dict[str, Any]] = []
        self.status_responses: list[dict[str, Any]] = []

    def compound_filter(self, predicate: str) -> None:
        self.calls.append(("compound_filter", predicate))
        self.filter["compound"].append(predicate)

    def identity_filter(self, name: str) -> None:
        self.calls.append(("identity_filter", name))
        self.filter["identity"].append(name)

    def discover(self, nodes=None) -> list[str]:
        self.calls.append(("discover", nodes))
        return list(self.discovered)

    def runonce(self, **options: Any) -> list[dict[str, Any]]:
        self.calls.append(("runonce", options))
        return self.runonce_responses

    def status(self) -> list[dict[str, Any]]:
        self.calls.append(("status", list(self.filter["identity"])))
        return self.status_responses

    def reset(self) -> None:
        self.calls.append(("reset",))
        self.filter = empty_filter()


@pytest.fixture()
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def coordinator(client: FakeClient, sleeps: list[float]) -> Coordinator:
    return Coordinator(client, RunConfig(concurrency=2), sleep=sleeps.append)
