from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta

import pytest

from hypolab.engine import SessionEngine
from hypolab.kv import MemoryKeyValueStore
from hypolab.ledger import TestResult
from hypolab.models import DiscriminativePower, EvidenceResult, TestDesign, TestType
from hypolab.resilience import RetryOptions, TimeoutOptions
from hypolab.storage import SessionStore, is_transient


class ScriptedKeyValueStore(MemoryKeyValueStore):
    """Memory store whose reads and writes can be scripted per key.

    `script_get(key, *steps)` queues steps for upcoming `get(key)` calls; a
    step is either a raw string to return or an exception to raise. Once the
    script runs out, reads fall through to the stored value.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        super().__init__(initial)
        self.get_calls: list[str] = []
        self.set_calls: list[str] = []
        self._get_scripts: dict[str, list[object]] = {}
        self.fail_keys: list[BaseException] = []
        self.fail_sets: list[BaseException] = []

    def script_get(self, key: str, *steps: object) -> None:
        self._get_scripts.setdefault(key, []).extend(steps)

    async def get(self, key: str) -> str | None:
        self.get_calls.append(key)
        script = self._get_scripts.get(key)
        if script:
            step = script.pop(0)
            if isinstance(step, BaseException):
                raise step
            return step  # type: ignore[return-value]
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_sets:
            raise self.fail_sets.pop(0)
        self.set_calls.append(key)
        await super().set(key, value)

    async def keys(self) -> list[str]:
        if self.fail_keys:
            raise self.fail_keys.pop(0)
        return await super().keys()


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 60) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def _reset_failure_dedupe() -> Iterator[None]:
    import hypolab.errors as errors_mod

    errors_mod._RECENT_SIGNATURES.clear()
    yield
    errors_mod._RECENT_SIGNATURES.clear()


@pytest.fixture
def kv() -> ScriptedKeyValueStore:
    return ScriptedKeyValueStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_retry() -> RetryOptions:
    return RetryOptions(max_attempts=3, base_delay_ms=0, max_delay_ms=0, jitter_ratio=0, should_retry=is_transient)


@pytest.fixture
def store(kv: ScriptedKeyValueStore, fast_retry: RetryOptions, clock: FakeClock) -> SessionStore:
    return SessionStore(kv, retry=fast_retry, timeout=TimeoutOptions(timeout_ms=1000), clock=clock)


@pytest.fixture
def engine(store: SessionStore, clock: FakeClock) -> SessionEngine:
    return SessionEngine(store, clock=clock)


@pytest.fixture
def make_design() -> Callable[..., TestDesign]:
    def _make(
        test_id: str = "T1",
        power: int = DiscriminativePower.DECISIVE,
        description: str = "Block the mechanism and watch the effect",
        type: TestType = TestType.MECHANISM_BLOCK,
    ) -> TestDesign:
        return TestDesign(id=test_id, description=description, type=type, discriminative_power=power)

    return _make


@pytest.fixture
def make_result(make_design: Callable[..., TestDesign]) -> Callable[..., TestResult]:
    def _make(
        result: EvidenceResult = EvidenceResult.SUPPORTS,
        power: int = DiscriminativePower.DECISIVE,
        test_id: str = "T1",
        **overrides: object,
    ) -> TestResult:
        fields: dict[str, object] = {
            "test": make_design(test_id, power),
            "prediction_if_true": "Effect disappears when blocked",
            "prediction_if_false": "Effect persists when blocked",
            "result": result,
            "observation": "Effect dropped by 80% in the blocked group",
            "source": "lab notebook p.12",
        }
        fields.update(overrides)
        return TestResult(**fields)

    return _make
