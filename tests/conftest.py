from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from fluxfilter.dependencies import reset_cached_dependencies
from fluxfilter.repositories.database import Database
from fluxfilter.services.bilibili_dispatcher import BilibiliDispatcher
from fluxfilter.services.rate_gate import MinimumIntervalGate
from tests.fakes import NAV_PAYLOAD, FakeClock, FakeTransport


@pytest.fixture(autouse=True)
def _isolated_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("FLUXFILTER_DATA_DIR", str(tmp_path / "runtime-data"))
    monkeypatch.delenv("FLUXFILTER_BILIBILI_CREDENTIAL", raising=False)
    reset_cached_dependencies()
    yield
    reset_cached_dependencies()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport(clock: FakeClock) -> FakeTransport:
    fake = FakeTransport(clock)
    fake.add("/x/web-interface/nav", NAV_PAYLOAD)
    return fake


@pytest.fixture
def make_dispatcher(
    clock: FakeClock,
    transport: FakeTransport,
) -> Callable[..., BilibiliDispatcher]:
    def _make(*, min_interval_seconds: float = 0.5, **overrides: Any) -> BilibiliDispatcher:
        gate = MinimumIntervalGate(
            min_interval_seconds=min_interval_seconds,
            clock=clock.time,
            sleep=clock.sleep,
        )
        options: dict[str, Any] = {
            "gate": gate,
            "transport": transport,
            "sleep": clock.sleep,
            "clock": clock.time,
        }
        options.update(overrides)
        return BilibiliDispatcher(**options)

    return _make


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db
