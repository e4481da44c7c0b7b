"""Shared pytest fixtures for bore-bench tests.

Provides a BenchConfig factory with every delay set to zero, a result-file
writer in the exact format the runner produces, and a fake for external
commands.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from borebench_common import BenchConfig


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., BenchConfig]:
    """Factory for BenchConfig that never sleeps and writes under tmp_path."""

    def _factory(**overrides: Any) -> BenchConfig:
        fields = dict(
            category="throughput",
            scheduler="BORE",
            detected_by="env",
            kernel_version="6.12.1-test",
            hostname="testhost",
            timestamp="20260101_120000",
            num_cpus=4,
            runs=1,
            output_dir=tmp_path,
            interpreter=sys.executable,
            fairness_tasks=8,
            fairness_size=2000,
            stress_rampup_delay=0,
            mixed_rampup_delay=0,
            cleanup_delay=0,
            settle_secs=0,
            settle_after_secs=0,
            run_pause_secs=0,
            drop_caches=False,
            prometheus=False,
        )
        fields.update(overrides)
        return BenchConfig(**fields)

    return _factory


THROUGHPUT_SECTIONS = {
    1: ["Average execution time: {t1}s", "Average bogo ops/s: {ops}"],
    2: ["Average: {t2}s"],
    3: ["Average Mean: {mean}s", "StdDev: {stdev}s",
        "Coefficient of Variation: 1.00%", "Run-to-run StdDev: 0.010000s"],
    4: ["Average events per second: {eps}"],
    5: ["Average: {t5}s"],
}

THROUGHPUT_DEFAULTS = dict(t1="30.100000", ops="1000.00", t2="12.000000",
                           mean="0.500000", stdev="0.050000", eps="5000.00",
                           t5="4.000000")

RESPONSIVENESS_SECTIONS = {
    1: ["Average: {t1}s"],
    2: ["Average: {t2}s"],
    3: ["Min Latency: {lmin}us", "Avg Latency: {lavg}us", "Max Latency: {lmax}us"],
    4: ["Average: {t4}s"],
}

RESPONSIVENESS_DEFAULTS = dict(t1="1.000000", t2="2.000000", lmin="2.00",
                               lavg="4.00", lmax="40.00", t4="0.500000")


def render_report(category: str, scheduler: str, order=None, **values: str) -> str:
    sections = THROUGHPUT_SECTIONS if category == "throughput" else RESPONSIVENESS_SECTIONS
    defaults = THROUGHPUT_DEFAULTS if category == "throughput" else RESPONSIVENESS_DEFAULTS
    params = {**defaults, **values}
    lines = [f"{category.upper()} BENCHMARK - {scheduler} SCHEDULER",
             f"Scheduler Type: {scheduler} (detected via env)"]
    for n in order or sorted(sections):
        lines += ["", f"TEST {n}: Scenario {n}", "Scenario: test", "-" * 40,
                  "Command: true"]
        lines += [line.format(**params) for line in sections[n]]
        lines.append("Successful runs: 1/1")
    return "\n".join(lines) + "\n"


@pytest.fixture()
def write_report(tmp_path: Path):
    """Write a result file named <category>_<SCHED>_<stamp>.txt."""

    def _write(category: str, scheduler: str, stamp: str = "20260101_120000",
               order=None, **values: str) -> Path:
        path = tmp_path / f"{category}_{scheduler}_{stamp}.txt"
        path.write_text(render_report(category, scheduler, order, **values))
        return path

    return _write


class FakeCommands:
    """Stand-in for run_cmd_capture keyed on the command name."""

    def __init__(self, outputs: dict[str, list[tuple[int, str]]] | None = None):
        self.outputs = outputs or {}
        self.calls: list[list[str]] = []

    def __call__(self, cmd, input_text=None, timeout=None):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        name = cmd[1] if cmd[0] == "sudo" else cmd[0]
        queue = self.outputs.get(name)
        if not queue:
            return 0, ""
        return queue.pop(0) if len(queue) > 1 else queue[0]


@pytest.fixture()
def fake_commands(monkeypatch) -> FakeCommands:
    import borebench_suites

    fake = FakeCommands()
    monkeypatch.setattr(borebench_suites, "run_cmd_capture", fake)
    monkeypatch.setattr(borebench_suites, "is_root", lambda: True)
    return fake
