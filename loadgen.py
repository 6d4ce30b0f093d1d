from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterator, Mapping, Optional

from whisk_client import ActivationNotFound, InvocationService, WhiskError

log = logging.getLogger(__name__)

DEFAULT_FETCH_RETRIES = 18
DEFAULT_FETCH_RETRY_DELAY_S = 2.0
RESULT_PREVIEW_CHARS = 2000

OnRecord = Callable[["InvocationRecord"], Awaitable[None]]


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def _parse_override_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def parse_overrides(items: list[str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid payload override '{item}'. Expected KEY=VALUE.")
        overrides[key.strip()] = _parse_override_value(raw)
    return overrides


def load_request_payload(
    payload_file: Path,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Mapping[str, Any]:
    with payload_file.open("r", encoding="utf-8") as f:
        parsed = json.load(f)
    if not isinstance(parsed, dict):
        raise ValueError(f"Request payload in {payload_file} must be a JSON object")
    fields = dict(parsed)
    if overrides:
        fields.update(overrides)
    for key, value in fields.items():
        if isinstance(value, (dict, list)):
            raise ValueError(
                f"Request payload field '{key}' in {payload_file} must be a scalar value"
            )
    return MappingProxyType(fields)


@dataclass(frozen=True)
class BenchmarkContext:
    service: InvocationService
    action_name: str
    payload: Mapping[str, Any]
    max_fetch_retries: int = DEFAULT_FETCH_RETRIES
    fetch_retry_delay_s: float = DEFAULT_FETCH_RETRY_DELAY_S


class FetchState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass
class FetchOutcome:
    state: FetchState
    result_text: Optional[str]
    error: Optional[str]
    attempts: int


class ResultRetriever:
    """Polls for an activation result until it is ready or the budget runs out.

    The first fetch is followed by at most ``max_retries`` further fetches,
    each ``retry_delay_s`` apart, as long as the service reports the
    activation as not found yet. Any other error ends polling at once.
    """

    def __init__(
        self,
        service: InvocationService,
        max_retries: int = DEFAULT_FETCH_RETRIES,
        retry_delay_s: float = DEFAULT_FETCH_RETRY_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.service = service
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep

    async def fetch(self, activation_id: str) -> FetchOutcome:
        state = FetchState.PENDING
        attempts = 0
        result_text: Optional[str] = None
        error: Optional[str] = None

        while state is FetchState.PENDING:
            attempts += 1
            try:
                result_text = await self.service.fetch_result(activation_id)
            except ActivationNotFound as exc:
                error = str(exc)
                if attempts > self.max_retries:
                    state = FetchState.EXHAUSTED
                    log.warning(
                        "activation %s: exhausted retries after %d attempts: %s",
                        activation_id,
                        attempts,
                        error,
                    )
                else:
                    await self._sleep(self.retry_delay_s)
            except WhiskError as exc:
                error = str(exc)
                state = FetchState.FAILED
                log.warning("activation %s: fetch failed: %s", activation_id, error)
            else:
                error = None
                state = FetchState.READY

        return FetchOutcome(
            state=state,
            result_text=result_text,
            error=error,
            attempts=attempts,
        )


def _safe_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _activation_timings(result_text: Optional[str]) -> dict[str, Optional[float]]:
    timings: dict[str, Optional[float]] = {
        "activation_duration_ms": None,
        "init_time_ms": None,
        "wait_time_ms": None,
    }
    if not result_text:
        return timings
    try:
        activation = json.loads(result_text)
    except json.JSONDecodeError:
        return timings
    if not isinstance(activation, dict):
        return timings

    timings["activation_duration_ms"] = _safe_float(activation.get("duration"))
    annotations = activation.get("annotations")
    if isinstance(annotations, list):
        for annotation in annotations:
            if not isinstance(annotation, dict):
                continue
            key = annotation.get("key")
            if key == "initTime":
                timings["init_time_ms"] = _safe_float(annotation.get("value"))
            elif key == "waitTime":
                timings["wait_time_ms"] = _safe_float(annotation.get("value"))
    return timings


@dataclass
class InvocationRecord:
    request_id: str
    round_name: str
    phase: str
    index: int
    scheduled_offset_s: Optional[float]
    activation_id: Optional[str]
    dispatch_time_unix_ms: int
    invoked_time_unix_ms: Optional[int]
    end_time_unix_ms: int
    invoke_ms: Optional[float]
    e2e_ms: float
    status: str
    error: Optional[str]
    fetch_attempts: int
    result_preview: Optional[str]
    activation_duration_ms: Optional[float]
    init_time_ms: Optional[float]
    wait_time_ms: Optional[float]

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def cold_start(self) -> bool:
        return self.init_time_ms is not None

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["cold_start"] = self.cold_start
        return row


async def invoke_and_retrieve(
    context: BenchmarkContext,
    *,
    round_name: str,
    phase: str,
    index: int,
    error_event: asyncio.Event,
    scheduled_offset_s: Optional[float] = None,
    on_record: Optional[OnRecord] = None,
) -> InvocationRecord:
    request_id = str(uuid.uuid4())
    dispatch_time_ms = now_unix_ms()
    invoked_time_ms: Optional[int] = None
    activation_id: Optional[str] = None
    status = "ok"
    error_text: Optional[str] = None
    fetch_attempts = 0
    result_text: Optional[str] = None

    try:
        try:
            activation_id, _ = await context.service.invoke_action(
                context.action_name, context.payload
            )
        except WhiskError as exc:
            status = "invoke_error"
            error_text = str(exc)
        else:
            invoked_time_ms = now_unix_ms()
            retriever = ResultRetriever(
                context.service,
                max_retries=context.max_fetch_retries,
                retry_delay_s=context.fetch_retry_delay_s,
            )
            outcome = await retriever.fetch(activation_id)
            fetch_attempts = outcome.attempts
            result_text = outcome.result_text
            if outcome.state is FetchState.EXHAUSTED:
                status = "exhausted"
                error_text = outcome.error
            elif outcome.state is FetchState.FAILED:
                status = "fetch_error"
                error_text = outcome.error
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        status = "error"
        error_text = str(exc)

    if status != "ok":
        error_event.set()
        log.warning("%s #%d failed (%s): %s", round_name, index, status, error_text)

    end_time_ms = now_unix_ms()
    record = InvocationRecord(
        request_id=request_id,
        round_name=round_name,
        phase=phase,
        index=index,
        scheduled_offset_s=scheduled_offset_s,
        activation_id=activation_id,
        dispatch_time_unix_ms=dispatch_time_ms,
        invoked_time_unix_ms=invoked_time_ms,
        end_time_unix_ms=end_time_ms,
        invoke_ms=(
            float(invoked_time_ms - dispatch_time_ms) if invoked_time_ms is not None else None
        ),
        e2e_ms=float(end_time_ms - dispatch_time_ms),
        status=status,
        error=error_text,
        fetch_attempts=fetch_attempts,
        result_preview=result_text[:RESULT_PREVIEW_CHARS] if result_text else None,
        **_activation_timings(result_text),
    )
    if on_record is not None:
        try:
            await on_record(record)
        except Exception:
            error_event.set()
            log.exception("%s #%d: recording the invocation failed", round_name, index)
            raise
    return record


@dataclass
class RoundSummary:
    round_name: str
    phase: str
    kind: str
    target: float
    planned: int
    dispatched: int
    ok_count: int
    failed_count: int
    cold_start_count: int
    start_time_unix_ms: int
    end_time_unix_ms: int
    max_dispatch_lag_ms: Optional[float]
    stopped_early: bool
    error_flagged: bool

    @property
    def failed(self) -> bool:
        return self.error_flagged or self.failed_count > 0

    @property
    def wall_time_s(self) -> float:
        return max(0.0, (self.end_time_unix_ms - self.start_time_unix_ms) / 1000.0)

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["wall_time_s"] = self.wall_time_s
        return row


async def _join(tasks: list[asyncio.Task[InvocationRecord]]) -> list[InvocationRecord]:
    if not tasks:
        return []
    await asyncio.wait(tasks)
    return [task.result() for task in tasks]


def _summarize(
    *,
    round_name: str,
    phase: str,
    kind: str,
    target: float,
    planned: int,
    records: list[InvocationRecord],
    start_time_ms: int,
    max_dispatch_lag_ms: Optional[float],
    stopped_early: bool,
    error_event: asyncio.Event,
) -> RoundSummary:
    ok_count = sum(1 for record in records if record.ok)
    summary = RoundSummary(
        round_name=round_name,
        phase=phase,
        kind=kind,
        target=target,
        planned=planned,
        dispatched=len(records),
        ok_count=ok_count,
        failed_count=len(records) - ok_count,
        cold_start_count=sum(1 for record in records if record.cold_start),
        start_time_unix_ms=start_time_ms,
        end_time_unix_ms=now_unix_ms(),
        max_dispatch_lag_ms=max_dispatch_lag_ms,
        stopped_early=stopped_early,
        error_flagged=error_event.is_set(),
    )
    log.info(
        "%s done: dispatched=%d ok=%d failed=%d cold=%d in %.2fs",
        round_name,
        summary.dispatched,
        summary.ok_count,
        summary.failed_count,
        summary.cold_start_count,
        summary.wall_time_s,
    )
    return summary


async def run_concurrent_round(
    context: BenchmarkContext,
    n: int,
    *,
    error_event: asyncio.Event,
    round_name: str,
    phase: str = "burst",
    on_record: Optional[OnRecord] = None,
) -> RoundSummary:
    """Fire ``n`` invocations at once and wait for every one of them."""
    if n < 0:
        raise ValueError(f"Round size must be >= 0, got {n}")
    log.info("%s: launching %d concurrent invocations", round_name, n)
    start_time_ms = now_unix_ms()
    tasks = [
        asyncio.create_task(
            invoke_and_retrieve(
                context,
                round_name=round_name,
                phase=phase,
                index=index,
                error_event=error_event,
                on_record=on_record,
            )
        )
        for index in range(n)
    ]
    records = await _join(tasks)
    return _summarize(
        round_name=round_name,
        phase=phase,
        kind="burst",
        target=float(n),
        planned=n,
        records=records,
        start_time_ms=start_time_ms,
        max_dispatch_lag_ms=None,
        stopped_early=False,
        error_event=error_event,
    )


def arrival_offsets(rate: float, duration_s: float) -> Iterator[float]:
    """Yield open-loop dispatch offsets ``i / rate`` below ``duration_s``."""
    if rate <= 0:
        raise ValueError(f"rate must be > 0, got {rate}")
    index = 0
    while True:
        offset = index / rate
        if offset >= duration_s:
            return
        yield offset
        index += 1


def dispatch_count(rate: float, duration_s: float) -> int:
    """Number of offsets ``arrival_offsets(rate, duration_s)`` yields."""
    if rate <= 0:
        raise ValueError(f"rate must be > 0, got {rate}")
    if duration_s <= 0:
        return 0
    count = math.ceil(duration_s * rate)
    # ceil can land one off when duration_s * rate is not exact in binary.
    while count > 0 and (count - 1) / rate >= duration_s:
        count -= 1
    while count / rate < duration_s:
        count += 1
    return count


async def run_paced_round(
    context: BenchmarkContext,
    rate: float,
    duration_minutes: float,
    *,
    error_event: asyncio.Event,
    round_name: str,
    phase: str = "measure",
    on_record: Optional[OnRecord] = None,
) -> RoundSummary:
    """Dispatch one invocation every ``1 / rate`` seconds for the duration.

    Dispatch never waits for earlier invocations. A late loop does not burst
    to catch up; it simply dispatches the next slot immediately. Scheduling
    stops once ``error_event`` is set, but every dispatched invocation is
    awaited before returning.
    """
    if rate <= 0:
        raise ValueError(f"rate must be > 0, got {rate}")
    if duration_minutes <= 0:
        raise ValueError(f"duration_minutes must be > 0, got {duration_minutes}")

    duration_s = duration_minutes * 60.0
    planned = dispatch_count(rate, duration_s)
    log.info(
        "%s: pacing %s req/s for %.1fs (%d dispatches planned)",
        round_name,
        rate,
        duration_s,
        planned,
    )

    tasks: list[asyncio.Task[InvocationRecord]] = []
    max_lag_s = 0.0
    stopped_early = False
    start_time_ms = now_unix_ms()
    started = time.monotonic()

    for index, offset in enumerate(arrival_offsets(rate, duration_s)):
        delay = (started + offset) - time.monotonic()
        if delay > 0:
            await asyncio.sleep(delay)
        else:
            max_lag_s = max(max_lag_s, -delay)
            await asyncio.sleep(0)
        if error_event.is_set():
            stopped_early = True
            log.warning(
                "%s: error flagged, stopping after %d of %d dispatches",
                round_name,
                len(tasks),
                planned,
            )
            break
        tasks.append(
            asyncio.create_task(
                invoke_and_retrieve(
                    context,
                    round_name=round_name,
                    phase=phase,
                    index=index,
                    error_event=error_event,
                    scheduled_offset_s=offset,
                    on_record=on_record,
                )
            )
        )

    records = await _join(tasks)
    return _summarize(
        round_name=round_name,
        phase=phase,
        kind="paced",
        target=float(rate),
        planned=planned,
        records=records,
        start_time_ms=start_time_ms,
        max_dispatch_lag_ms=max_lag_s * 1000.0,
        stopped_early=stopped_early,
        error_event=error_event,
    )
