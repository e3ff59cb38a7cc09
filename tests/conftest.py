"""Pytest configuration and fixtures for query-gate tests.

Every test gets fresh component instances and a clean settings cache, so
no state leaks through the process-wide accessors.

Coroutine tests are marked ``@pytest.mark.asyncio``; the hook below also runs
them through ``asyncio.run`` when the asyncio plugin does not take over.
"""

import asyncio
import inspect
from typing import List, Sequence

import logfire
import pytest

from query_gate.core.analytics import UsageAnalytics
from query_gate.core.batch_processor import BatchProcessor
from query_gate.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from query_gate.core.errors import ProviderError
from query_gate.core.request_queue import RequestQueue
from query_gate.core.semantic_cache import SemanticCache
from query_gate.pipeline import AssistantPipeline, AssistantServices, reset_services
from query_gate.providers import HashingEmbedder, ProviderResponse
from query_gate.settings import Settings, clear_settings_cache

logfire.configure(send_to_logfire=False, console=False)


class RecordingProvider:
    """Provider double that answers with a fixed text and counts calls.

    With ``echo=True`` the answer also names the user message it was built from.
    """

    name = "recording"

    def __init__(
        self,
        text: str = "Model answer",
        fail: bool = False,
        delay: float = 0.0,
        echo: bool = False,
    ):
        self.text = text
        self.fail = fail
        self.delay = delay
        self.echo = echo
        self.calls: List[Sequence[dict]] = []

    async def complete(self, model, messages):
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError("upstream exploded", status_code=500)
        text = f"{self.text} for: {messages[-1]['content']}" if self.echo else self.text
        return ProviderResponse(text=text, model=model, tokens=42, elapsed_ms=1.0)


@pytest.fixture(autouse=True)
def isolate_settings(monkeypatch):
    """Keep real credentials and cached singletons out of tests."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LOGFIRE_TOKEN", raising=False)
    clear_settings_cache()
    reset_services()
    yield
    clear_settings_cache()
    reset_services()


@pytest.fixture
def fast_settings():
    """Settings with tiny windows so timing tests run quickly."""
    return Settings(
        _env_file=None,
        queue={"dispatch_interval_seconds": 0.0, "max_wait_seconds": 5.0},
        batch={"batch_interval_seconds": 0.01, "request_timeout_seconds": 5.0},
        circuit={"cooldown_seconds": 0.1, "failure_window_seconds": 60.0},
    )


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def provider_factory():
    """Build extra provider doubles (e.g. ``provider_factory(fail=True)``)."""
    return RecordingProvider


@pytest.fixture
def pipeline(fast_settings, provider):
    services = AssistantServices.from_settings(
        fast_settings, provider=provider, embedder=HashingEmbedder()
    )
    return AssistantPipeline(services)


@pytest.fixture
def breaker():
    return CircuitBreaker(
        "test-provider",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, cooldown=0.1),
    )


@pytest.fixture
def cache():
    return SemanticCache(max_entries=10)


@pytest.fixture
def queue():
    return RequestQueue(dispatch_interval=0.0)


@pytest.fixture
def batcher():
    return BatchProcessor(batch_interval=0.01)


@pytest.fixture
def analytics():
    return UsageAnalytics()


def pytest_pyfunc_call(pyfuncitem: pytest.Item) -> bool | None:
    """Run ``async def`` tests via asyncio.run when no plugin handles them."""
    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        kwargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        asyncio.run(test_func(**kwargs))
        return True
    return None
