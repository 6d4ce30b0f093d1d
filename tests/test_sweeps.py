import asyncio
import json

import pytest

import runner
from conftest import FakeInvocationService, make_context
from loadgen import run_concurrent_round
from runner import (
    RunConfig,
    SweepState,
    provisioned_concurrency_sweep,
    run_benchmark,
    run_burst,
    run_mode,
    step_rate_sweep,
)
from whisk_client import WhiskError


@pytest.mark.asyncio
async def test_rate_sweep_warms_then_measures_each_step():
    service = FakeInvocationService()

    result = await step_rate_sweep(
        make_context(service), 2, 4, 2, 0.0045, 2, error_event=asyncio.Event()
    )

    assert result.state is SweepState.IDLE
    assert not result.aborted
    assert [(summary.phase, summary.planned) for summary in result.rounds] == [
        ("warmup", 2),
        ("warmup", 4),
        ("measure", 1),
        ("warmup", 2),
        ("warmup", 4),
        ("warmup", 6),
        ("measure", 2),
    ]
    assert [summary.round_name for summary in result.rounds if summary.kind == "paced"] == [
        "rate_2_measure",
        "rate_4_measure",
    ]
    assert service.invoke_calls == 21


@pytest.mark.asyncio
async def test_rate_sweep_halts_after_failed_measurement():
    service = FakeInvocationService(fail_invoke=lambda ordinal: ordinal >= 20)
    error_event = asyncio.Event()

    result = await step_rate_sweep(
        make_context(service), 2, 6, 2, 0.0045, 2, error_event=error_event
    )

    assert result.state is SweepState.ABORTED
    assert result.aborted_at == "rate_4"
    assert error_event.is_set()
    assert not any(summary.round_name.startswith("rate_6") for summary in result.rounds)
    assert result.rounds[-1].round_name == "rate_4_measure"
    assert service.invoke_calls <= 21


@pytest.mark.asyncio
async def test_rate_sweep_halts_after_failed_warm_up():
    service = FakeInvocationService(fail_invoke=lambda ordinal: ordinal >= 8)

    result = await step_rate_sweep(
        make_context(service), 2, 6, 2, 0.0045, 2, error_event=asyncio.Event()
    )

    assert result.aborted
    assert result.aborted_at == "rate_4 warm-up"
    assert [summary.phase for summary in result.rounds].count("measure") == 1
    assert result.rounds[-1].round_name == "rate_4_warmup_c2"


@pytest.mark.asyncio
async def test_rate_sweep_clears_signal_between_steps(context):
    error_event = asyncio.Event()
    error_event.set()

    result = await step_rate_sweep(context, 1, 1, 1, 0.0045, 1, error_event=error_event)

    assert result.state is SweepState.IDLE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "start, end, step, duration, warmup_step",
    [
        (10, 5, 1, 1.0, 1),
        (0, 5, 1, 1.0, 1),
        (4, 8, 0, 1.0, 1),
        (4, 4, 1, 0, 4),
        (4, 4, 1, -1.0, 4),
        (4, 4, 1, 1.0, 0),
    ],
)
async def test_rate_sweep_rejects_bad_input_before_any_invocation(
    service, context, start, end, step, duration, warmup_step
):
    with pytest.raises(ValueError):
        await step_rate_sweep(
            context, start, end, step, duration, warmup_step, error_event=asyncio.Event()
        )
    assert service.invoke_calls == 0


@pytest.mark.asyncio
async def test_provisioned_sweep_round_sequence():
    service = FakeInvocationService()
    cooldowns = []

    async def fake_sleep(seconds):
        cooldowns.append((seconds, service.invoke_calls))

    result = await provisioned_concurrency_sweep(
        make_context(service), 3, 0.5, error_event=asyncio.Event(), sleep=fake_sleep
    )

    assert result.state is SweepState.IDLE
    assert [summary.dispatched for summary in result.rounds] == [
        3, 3, 3, 3,
        3, 2, 2, 2,
        3, 1, 1, 1,
        2, 2, 2, 2,
        2, 1, 1, 1,
        1, 1, 1, 1,
    ]
    assert [summary.phase for summary in result.rounds[:4]] == [
        "provisioned_warm",
        "provisioned_test",
        "provisioned_test",
        "provisioned_test",
    ]
    assert cooldowns == [(30.0, 27), (30.0, 40)]
    assert result.rounds[0].round_name == "pc3_c3_warm"
    assert result.rounds[-1].round_name == "pc1_c1_test3"


@pytest.mark.asyncio
async def test_provisioned_sweep_aborts_on_error():
    service = FakeInvocationService(fail_invoke=lambda ordinal: ordinal > 5)
    cooldowns = []

    async def fake_sleep(seconds):
        cooldowns.append(seconds)

    result = await provisioned_concurrency_sweep(
        make_context(service), 3, 1.0, error_event=asyncio.Event(), sleep=fake_sleep
    )

    assert result.aborted
    assert result.aborted_at == "pc3_c3 test 1"
    assert len(result.rounds) == 2
    assert cooldowns == []


@pytest.mark.asyncio
async def test_provisioned_sweep_without_cooldown_does_not_sleep(context):
    calls = []

    async def fake_sleep(seconds):
        calls.append(seconds)

    result = await provisioned_concurrency_sweep(
        context, 2, 0, error_event=asyncio.Event(), sleep=fake_sleep
    )

    assert not result.aborted
    assert calls == []


@pytest.mark.asyncio
async def test_burst_retries_until_clean_round():
    service = FakeInvocationService(fail_invoke=lambda ordinal: ordinal <= 2)

    result = await run_burst(make_context(service), 4, 3, error_event=asyncio.Event())

    assert result.state is SweepState.IDLE
    assert len(result.rounds) == 2
    assert result.rounds[0].failed_count == 2
    assert result.rounds[1].ok_count == 4


@pytest.mark.asyncio
async def test_burst_without_retries_aborts_on_failure():
    service = FakeInvocationService(fail_invoke=lambda ordinal: True)

    result = await run_burst(make_context(service), 4, error_event=asyncio.Event())

    assert result.aborted
    assert len(result.rounds) == 1


@pytest.mark.asyncio
async def test_run_mode_dispatches_on_mode(context, tmp_path):
    config = RunConfig(
        action_name="crtw-tvm-mb-4",
        payload_file=tmp_path / "req.json",
        mode="burst",
        concurrency=3,
    )

    result = await run_mode(config, context, asyncio.Event())

    assert result.mode == "burst"
    assert result.rounds[0].dispatched == 3

    config.mode = "closed-loop"
    with pytest.raises(ValueError):
        await run_mode(config, context, asyncio.Event())


class FakeWhiskClient(FakeInvocationService):
    instances = []

    def __init__(self, config):
        super().__init__()
        self.config = config
        FakeWhiskClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None


class FailingDeleteWhiskClient(FakeWhiskClient):
    async def delete_action(self, name):
        raise WhiskError(f"delete {name} failed", status_code=502)


def _benchmark_config(tmp_path, monkeypatch, client_class, **overrides):
    for name in ("WHISK_APIHOST", "WHISK_AUTH", "WHISK_NAMESPACE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(runner, "WhiskClient", client_class)
    FakeWhiskClient.instances.clear()

    props = tmp_path / "wskprops"
    props.write_text("APIHOST=10.10.10.227:31001\nAUTH=user:secret\n", encoding="utf-8")
    payload_file = tmp_path / "req.json"
    payload_file.write_text(
        json.dumps({"model_type": "mobilenet_v1_1.0_224", "key_service_port": 13571}),
        encoding="utf-8",
    )
    fields = dict(
        action_name="crtw-tvm-mb-4",
        payload_file=payload_file,
        mode="burst",
        concurrency=5,
        wskprops=props,
        fetch_retry_delay_s=0.0,
        output_dir=tmp_path / "runs",
        run_name="mb burst",
    )
    fields.update(overrides)
    return RunConfig(**fields)


@pytest.mark.asyncio
async def test_run_benchmark_writes_run_log(tmp_path, monkeypatch):
    config = _benchmark_config(
        tmp_path,
        monkeypatch,
        FakeWhiskClient,
        payload_overrides={"key_service_address": "10.10.10.227"},
        create_image="hugy718/wsk-blackbox-action:latest",
        action_concurrency=4,
        delete_action=True,
    )

    output_dir, result = await run_benchmark(config)

    client = FakeWhiskClient.instances[0]
    assert client.config.base_url == "https://10.10.10.227:31001/api/v1/namespaces/_"
    assert client.created == [
        ("crtw-tvm-mb-4", "blackbox", "hugy718/wsk-blackbox-action:latest", 4)
    ]
    assert client.deleted == ["crtw-tvm-mb-4"]
    assert not result.aborted
    assert output_dir.name.startswith("mb_burst_")

    lines = (output_dir / "invocations.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 5
    assert json.loads(lines[0])["status"] == "ok"
    rounds = json.loads((output_dir / "rounds.json").read_text(encoding="utf-8"))
    assert rounds[0]["dispatched"] == 5
    resolved = json.loads((output_dir / "config.json").read_text(encoding="utf-8"))
    assert resolved["payload_overrides"] == {"key_service_address": "10.10.10.227"}
    assert "burst_c5_a1" in (output_dir / "summary.md").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_failed_action_delete_keeps_the_run_log(tmp_path, monkeypatch):
    config = _benchmark_config(
        tmp_path, monkeypatch, FailingDeleteWhiskClient, delete_action=True
    )

    output_dir, result = await run_benchmark(config)

    assert result.state is SweepState.IDLE
    assert sorted(path.name for path in output_dir.iterdir()) == [
        "config.json",
        "invocations.jsonl",
        "rounds.json",
        "summary.md",
    ]
    rounds = json.loads((output_dir / "rounds.json").read_text(encoding="utf-8"))
    assert [row["round_name"] for row in rounds] == ["burst_c5_a1"]


@pytest.mark.asyncio
async def test_run_log_is_written_when_a_sweep_raises(tmp_path, monkeypatch):
    config = _benchmark_config(tmp_path, monkeypatch, FakeWhiskClient, delete_action=True)

    async def crashing_run_mode(config, context, error_event, on_record=None, result=None):
        result.rounds.append(
            await run_concurrent_round(
                context, 2, error_event=error_event, round_name="burst_c2_a1", on_record=on_record
            )
        )
        raise RuntimeError("controller crashed")

    monkeypatch.setattr(runner, "run_mode", crashing_run_mode)

    with pytest.raises(RuntimeError):
        await run_benchmark(config)

    output_dir = next((tmp_path / "runs").iterdir())
    rounds = json.loads((output_dir / "rounds.json").read_text(encoding="utf-8"))
    assert [row["round_name"] for row in rounds] == ["burst_c2_a1"]
    summary = (output_dir / "summary.md").read_text(encoding="utf-8")
    assert "aborted" in summary
    assert "controller crashed" in summary
    assert FakeWhiskClient.instances[0].deleted == ["crtw-tvm-mb-4"]
    lines = (output_dir / "invocations.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
