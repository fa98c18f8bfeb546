import asyncio

import pytest

from tenantauth.service.errors import StoreUnavailableError
from tenantauth.service.store_calls import call_store


class Flaky:
    def __init__(self, failures, exc=ConnectionRefusedError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("refused")
        return "ok"


class TestCallStore:
    async def test_success_passes_value_through(self):
        assert await call_store("op", Flaky(0), timeout=1.0) == "ok"

    async def test_retries_until_success(self):
        flaky = Flaky(2)

        result = await call_store("op", flaky, timeout=1.0, retries=2, backoff=0.0)

        assert result == "ok"
        assert flaky.calls == 3

    async def test_exhausted_retries_raise_unavailable(self):
        flaky = Flaky(5)

        with pytest.raises(StoreUnavailableError) as excinfo:
            await call_store("get_thing", flaky, timeout=1.0, retries=1, backoff=0.0)

        assert flaky.calls == 2
        assert excinfo.value.detail == {"operation": "get_thing", "attempts": 2}
        assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)

    async def test_timeout_counts_as_unavailable(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(StoreUnavailableError):
            await call_store("slow", slow, timeout=0.01)

    async def test_other_errors_propagate_unchanged(self):
        flaky = Flaky(1, exc=KeyError)

        with pytest.raises(KeyError):
            await call_store("op", flaky, timeout=1.0, retries=3, backoff=0.0)
        assert flaky.calls == 1
