import asyncio
import itertools
from typing import Any, Callable, Mapping, Optional

import pytest

from loadgen import BenchmarkContext
from whisk_client import ActivationNotFound, WhiskError


class FakeInvocationService:
    """In-memory invocation service.

    ``not_ready_polls`` makes each activation answer "not found" that many
    times before returning its result. ``fail_invoke`` decides, per call
    ordinal (1-based), whether the invoke call raises.
    """

    def __init__(
        self,
        invoke_delay_s: float = 0.0,
        not_ready_polls: int = 0,
        fail_invoke: Optional[Callable[[int], bool]] = None,
    ) -> None:
        self.invoke_delay_s = invoke_delay_s
        self.not_ready_polls = not_ready_polls
        self.fail_invoke = fail_invoke
        self.invoke_calls = 0
        self.fetch_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.completed = 0
        self.created: list[tuple[str, str, str, int]] = []
        self.deleted: list[str] = []
        self._ids = itertools.count(1)
        self._polls: dict[str, int] = {}

    async def create_action(self, name: str, kind: str, image: str, concurrency: int) -> None:
        self.created.append((name, kind, image, concurrency))

    async def invoke_action(self, name: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        self.invoke_calls += 1
        ordinal = self.invoke_calls
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.invoke_delay_s:
                await asyncio.sleep(self.invoke_delay_s)
            if self.fail_invoke is not None and self.fail_invoke(ordinal):
                raise WhiskError(f"invoke {name} rejected", status_code=503)
        finally:
            self.in_flight -= 1
        activation_id = f"act-{next(self._ids)}"
        self._polls[activation_id] = 0
        return activation_id, f'{{"activationId": "{activation_id}"}}'

    async def fetch_result(self, activation_id: str) -> str:
        self.fetch_calls += 1
        polls = self._polls.get(activation_id, 0)
        self._polls[activation_id] = polls + 1
        if polls < self.not_ready_polls:
            raise ActivationNotFound(f"activation {activation_id} not found", status_code=404)
        self.completed += 1
        return (
            f'{{"activationId": "{activation_id}", "duration": 12, '
            '"annotations": [{"key": "waitTime", "value": 3}], '
            '"response": {"status": "success", "success": true}}'
        )

    async def delete_action(self, name: str) -> None:
        self.deleted.append(name)


@pytest.fixture
def service() -> FakeInvocationService:
    return FakeInvocationService()


def make_context(service, **kwargs) -> BenchmarkContext:
    kwargs.setdefault("fetch_retry_delay_s", 0.0)
    return BenchmarkContext(
        service=service,
        action_name="crtw-tvm-mb-4",
        payload={"model_type": "mobilenet_v1_1.0_224", "user_id": "admin"},
        **kwargs,
    )


@pytest.fixture
def context(service) -> BenchmarkContext:
    return make_context(service)
