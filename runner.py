from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from loadgen import (
    DEFAULT_FETCH_RETRIES,
    DEFAULT_FETCH_RETRY_DELAY_S,
    BenchmarkContext,
    InvocationRecord,
    OnRecord,
    RoundSummary,
    load_request_payload,
    run_concurrent_round,
    run_paced_round,
)
from report import write_rounds_json, write_summary_markdown
from whisk_client import InvocationService, WhiskClient, WhiskConfig, WhiskError

log = logging.getLogger(__name__)

PROVISIONED_TEST_REPETITIONS = 3

Sleep = Callable[[float], Awaitable[None]]


class SweepState(str, Enum):
    IDLE = "idle"
    WARMING = "warming"
    MEASURING = "measuring"
    ABORTED = "aborted"


@dataclass
class SweepResult:
    mode: str
    state: SweepState = SweepState.IDLE
    aborted_at: Optional[str] = None
    rounds: list[RoundSummary] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.state is SweepState.ABORTED

    def transition(self, state: SweepState, detail: str = "") -> None:
        if state is self.state:
            return
        log.info(
            "%s: %s -> %s%s",
            self.mode,
            self.state.value,
            state.value,
            f" ({detail})" if detail else "",
        )
        self.state = state

    def abort(self, step: str) -> None:
        self.aborted_at = step
        self.transition(SweepState.ABORTED, f"error flagged at {step}")


async def warm_up(
    context: BenchmarkContext,
    start: int,
    step: int,
    target: int,
    *,
    error_event: asyncio.Event,
    label: str = "warmup",
    on_record: Optional[OnRecord] = None,
) -> list[RoundSummary]:
    """Gradually raise burst size so containers are not all started at once.

    Bursts grow from ``start`` by ``step`` while below ``target + 2 * step``,
    so the platform ends up warmed slightly past the target. Each burst
    completes before the next one starts.
    """
    if step <= 0:
        raise ValueError(f"warm-up step must be > 0, got {step}")

    summaries: list[RoundSummary] = []
    size = start
    while size < target + 2 * step:
        if size > 0:
            summary = await run_concurrent_round(
                context,
                size,
                error_event=error_event,
                round_name=f"{label}_c{size}",
                phase="warmup",
                on_record=on_record,
            )
            summaries.append(summary)
            if error_event.is_set():
                log.warning("%s: error flagged at burst size %d, ramp stopped", label, size)
                break
        size += step
    return summaries


async def step_rate_sweep(
    context: BenchmarkContext,
    start_rate: int,
    end_rate: int,
    step: int,
    duration_minutes: float,
    warmup_step: int,
    *,
    error_event: asyncio.Event,
    on_record: Optional[OnRecord] = None,
    result: Optional[SweepResult] = None,
) -> SweepResult:
    """Measure each rate from ``start_rate`` to ``end_rate`` inclusive.

    ``result`` may be supplied by the caller so rounds finished before an
    exception are still available to it.
    """
    if start_rate <= 0 or step <= 0:
        raise ValueError("start_rate and step must be > 0")
    if end_rate < start_rate:
        raise ValueError(f"end_rate ({end_rate}) must be >= start_rate ({start_rate})")
    if duration_minutes <= 0:
        raise ValueError(f"duration_minutes must be > 0, got {duration_minutes}")
    if warmup_step <= 0:
        raise ValueError(f"warmup_step must be > 0, got {warmup_step}")

    result = result or SweepResult(mode="rate-sweep")
    previous_rate = 0
    target_rate = start_rate
    while target_rate <= end_rate:
        step_name = f"rate_{target_rate}"
        error_event.clear()

        result.transition(SweepState.WARMING, step_name)
        result.rounds.extend(
            await warm_up(
                context,
                previous_rate,
                warmup_step,
                target_rate,
                error_event=error_event,
                label=f"{step_name}_warmup",
                on_record=on_record,
            )
        )
        if error_event.is_set():
            result.abort(f"{step_name} warm-up")
            return result

        result.transition(SweepState.MEASURING, step_name)
        result.rounds.append(
            await run_paced_round(
                context,
                target_rate,
                duration_minutes,
                error_event=error_event,
                round_name=f"{step_name}_measure",
                on_record=on_record,
            )
        )
        if error_event.is_set():
            result.abort(step_name)
            return result

        previous_rate = target_rate
        target_rate += step

    result.transition(SweepState.IDLE, "sweep complete")
    return result


async def provisioned_concurrency_sweep(
    context: BenchmarkContext,
    max_provisioned: int,
    cooldown_minutes: float,
    *,
    error_event: asyncio.Event,
    repetitions: int = PROVISIONED_TEST_REPETITIONS,
    on_record: Optional[OnRecord] = None,
    sleep: Sleep = asyncio.sleep,
    result: Optional[SweepResult] = None,
) -> SweepResult:
    if max_provisioned <= 0:
        raise ValueError(f"max_provisioned must be > 0, got {max_provisioned}")
    if cooldown_minutes < 0:
        raise ValueError(f"cooldown_minutes must be >= 0, got {cooldown_minutes}")

    result = result or SweepResult(mode="provisioned-sweep")
    for level in range(max_provisioned, 0, -1):
        for test_concurrency in range(level, 0, -1):
            step_name = f"pc{level}_c{test_concurrency}"
            error_event.clear()

            result.transition(SweepState.WARMING, step_name)
            result.rounds.append(
                await run_concurrent_round(
                    context,
                    level,
                    error_event=error_event,
                    round_name=f"{step_name}_warm",
                    phase="provisioned_warm",
                    on_record=on_record,
                )
            )
            if error_event.is_set():
                result.abort(f"{step_name} warm burst")
                return result

            result.transition(SweepState.MEASURING, step_name)
            for repetition in range(1, repetitions + 1):
                result.rounds.append(
                    await run_concurrent_round(
                        context,
                        test_concurrency,
                        error_event=error_event,
                        round_name=f"{step_name}_test{repetition}",
                        phase="provisioned_test",
                        on_record=on_record,
                    )
                )
                if error_event.is_set():
                    result.abort(f"{step_name} test {repetition}")
                    return result

        if level > 1 and cooldown_minutes > 0:
            result.transition(SweepState.IDLE, f"cooling down {cooldown_minutes} min")
            await sleep(cooldown_minutes * 60.0)

    result.transition(SweepState.IDLE, "sweep complete")
    return result


async def run_burst(
    context: BenchmarkContext,
    concurrency: int,
    max_attempts: int = 1,
    *,
    error_event: asyncio.Event,
    on_record: Optional[OnRecord] = None,
    result: Optional[SweepResult] = None,
) -> SweepResult:
    if concurrency <= 0:
        raise ValueError(f"concurrency must be > 0, got {concurrency}")
    if max_attempts <= 0:
        raise ValueError(f"max_attempts must be > 0, got {max_attempts}")

    result = result or SweepResult(mode="burst")
    result.transition(SweepState.MEASURING, f"burst of {concurrency}")
    for attempt in range(1, max_attempts + 1):
        error_event.clear()
        result.rounds.append(
            await run_concurrent_round(
                context,
                concurrency,
                error_event=error_event,
                round_name=f"burst_c{concurrency}_a{attempt}",
                on_record=on_record,
            )
        )
        if not error_event.is_set():
            result.transition(SweepState.IDLE, "burst complete")
            return result
        if attempt < max_attempts:
            log.warning("last round failed, retrying (attempt %d/%d)", attempt + 1, max_attempts)

    result.abort(f"burst attempt {max_attempts}")
    return result


@dataclass
class RunConfig:
    action_name: str
    payload_file: Path
    mode: str = "rate-sweep"
    payload_overrides: dict[str, Any] = field(default_factory=dict)
    wskprops: Optional[Path] = None
    insecure: bool = False
    timeout_s: float = 300.0
    create_image: Optional[str] = None
    action_kind: str = "blackbox"
    action_concurrency: int = 1
    delete_action: bool = False
    start_rate: int = 20
    end_rate: int = 200
    rate_step: int = 20
    duration_minutes: float = 1.0
    warmup_step: int = 4
    max_provisioned: int = 4
    cooldown_minutes: float = 10.0
    concurrency: int = 128
    attempts: int = 1
    max_fetch_retries: int = DEFAULT_FETCH_RETRIES
    fetch_retry_delay_s: float = DEFAULT_FETCH_RETRY_DELAY_S
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None


class InvocationLog:
    """Append-only ``invocations.jsonl``; one line per finished invocation."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.count = 0
        self._stream = path.open("a", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def append(self, record: InvocationRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=True, sort_keys=True)
        async with self._lock:
            self._stream.write(f"{line}\n")
            self.count += 1

    def close(self) -> None:
        if not self._stream.closed:
            self._stream.close()
            log.info("wrote %d invocation records to %s", self.count, self.path)


def _make_run_dir(root: Path, run_name: Optional[str], started: datetime) -> Path:
    slug = "_".join((run_name or "run").split())
    run_dir = root / f"{slug}_{started:%Y%m%d_%H%M%S}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def _dump_json(path: Path, document: Any) -> None:
    with path.open("w", encoding="utf-8") as handle:
        json.dump(document, handle, indent=2)
        handle.write("\n")


def _resolved_config_dict(
    config: RunConfig, output_dir: Path, started: datetime
) -> dict[str, Any]:
    payload = asdict(config)
    payload["payload_file"] = str(config.payload_file)
    payload["output_dir"] = str(config.output_dir)
    payload["wskprops"] = str(config.wskprops) if config.wskprops else None
    payload["resolved_run_dir"] = str(output_dir)
    payload["started_at_utc"] = started.isoformat()
    return payload


async def run_mode(
    config: RunConfig,
    context: BenchmarkContext,
    error_event: asyncio.Event,
    on_record: Optional[OnRecord] = None,
    result: Optional[SweepResult] = None,
) -> SweepResult:
    if config.mode == "rate-sweep":
        return await step_rate_sweep(
            context,
            config.start_rate,
            config.end_rate,
            config.rate_step,
            config.duration_minutes,
            config.warmup_step,
            error_event=error_event,
            on_record=on_record,
            result=result,
        )
    if config.mode == "provisioned-sweep":
        return await provisioned_concurrency_sweep(
            context,
            config.max_provisioned,
            config.cooldown_minutes,
            error_event=error_event,
            on_record=on_record,
            result=result,
        )
    if config.mode == "burst":
        return await run_burst(
            context,
            config.concurrency,
            config.attempts,
            error_event=error_event,
            on_record=on_record,
            result=result,
        )
    raise ValueError(f"Unsupported mode: {config.mode}")


async def _delete_action(service: InvocationService, action_name: str) -> None:
    try:
        await service.delete_action(action_name)
    except WhiskError as exc:
        log.warning("could not delete action %s: %s", action_name, exc)


async def run_benchmark(config: RunConfig) -> tuple[Path, SweepResult]:
    payload = load_request_payload(config.payload_file, config.payload_overrides)
    whisk_config = WhiskConfig.load(
        props_path=config.wskprops,
        insecure=config.insecure,
        timeout_s=config.timeout_s,
    )

    started = datetime.now(timezone.utc)
    output_dir = _make_run_dir(config.output_dir, config.run_name, started)
    resolved_config = _resolved_config_dict(config, output_dir, started)
    _dump_json(output_dir / "config.json", resolved_config)

    invocation_log = InvocationLog(output_dir / "invocations.jsonl")
    error_event = asyncio.Event()
    result = SweepResult(mode=config.mode)
    try:
        async with WhiskClient(whisk_config) as client:
            if config.create_image:
                await client.create_action(
                    config.action_name,
                    config.action_kind,
                    config.create_image,
                    config.action_concurrency,
                )
            context = BenchmarkContext(
                service=client,
                action_name=config.action_name,
                payload=payload,
                max_fetch_retries=config.max_fetch_retries,
                fetch_retry_delay_s=config.fetch_retry_delay_s,
            )
            try:
                await run_mode(config, context, error_event, invocation_log.append, result)
            except Exception as exc:
                if not result.aborted:
                    result.abort(f"{type(exc).__name__}: {exc}")
                raise
            finally:
                if config.delete_action:
                    await _delete_action(client, config.action_name)
    finally:
        invocation_log.close()
        # Rounds finished before a failure are still written out.
        write_rounds_json(output_dir / "rounds.json", result.rounds)
        write_summary_markdown(
            output_path=output_dir / "summary.md",
            run_name=config.run_name or "run",
            resolved_config=resolved_config,
            mode=result.mode,
            final_state=result.state.value,
            aborted_at=result.aborted_at,
            rounds=result.rounds,
        )
    return output_dir, result
