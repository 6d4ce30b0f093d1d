from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loadgen import RoundSummary


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _fmt_target(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return _fmt(value)


def write_rounds_json(output_path: Path, rounds: list[RoundSummary]) -> None:
    output_path.write_text(
        json.dumps([summary.to_dict() for summary in rounds], indent=2),
        encoding="utf-8",
    )


def write_summary_markdown(
    output_path: Path,
    run_name: str,
    resolved_config: dict[str, Any],
    mode: str,
    final_state: str,
    aborted_at: Optional[str],
    rounds: list[RoundSummary],
) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# OpenWhisk Load Test Log - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"Mode: `{mode}`, final state: `{final_state}`")
    if aborted_at:
        lines.append("")
        lines.append(f"Aborted at `{aborted_at}`: an invocation failed, later steps were skipped.")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(resolved_config, indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Rounds")
    lines.append("")
    lines.append(
        "| Round | Phase | Kind | Target | Planned | Dispatched | OK | Failed | "
        "Cold starts | Wall s | Max lag ms | Stopped early |"
    )
    lines.append("|---|---|---|---:|---:|---:|---:|---:|---:|---:|---:|---|")

    for summary in rounds:
        lines.append(
            "| "
            f"{summary.round_name} | "
            f"{summary.phase} | "
            f"{summary.kind} | "
            f"{_fmt_target(summary.target)} | "
            f"{summary.planned} | "
            f"{summary.dispatched} | "
            f"{summary.ok_count} | "
            f"{summary.failed_count} | "
            f"{summary.cold_start_count} | "
            f"{_fmt(summary.wall_time_s)} | "
            f"{_fmt(summary.max_dispatch_lag_ms)} | "
            f"{'yes' if summary.stopped_early else 'no'} |"
        )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
