"""Tests for the benchmark suites, with external tools faked out."""

import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

import borebench_suites
from borebench_common import CommandFailed
from borebench_compare import compare_files
from borebench_suites import (
    BackgroundLoad, ResultArtifact, aggregate, drop_caches, measure_fairness,
    parse_bogo_ops, parse_cyclictest, parse_hackbench_time, parse_sysbench_eps,
    parse_task_times, responsiveness_scenarios, run_scenario, run_suite,
    stabilize, throughput_scenarios,
)

STRESS_NG_BRIEF = """\
stress-ng: info:  [4242] setting to a 30 secs run per stressor
stress-ng: info:  [4242] dispatching hogs: 4 cpu
stress-ng: metrc: [4242] stressor       bogo ops real time  usr time  sys time   bogo ops/s     bogo ops/s
stress-ng: metrc: [4242]                           (secs)    (secs)    (secs)   (real time) (usr+sys time)
stress-ng: metrc: [4242] cpu               48020     30.00    119.80      0.05      1600.62         400.66
stress-ng: info:  [4242] successful run completed in 30.01 secs
"""

HACKBENCH = """\
Running in process mode with 50 groups using 40 file descriptors each (== 2000 tasks)
Each sender will pass 1000 messages of 512 bytes
Time: 12.345
"""

SYSBENCH = """\
CPU speed:
    events per second:  5123.45

General statistics:
    total time:                          60.0003s
"""

CYCLICTEST = """\
# /dev/cpu_dma_latency set to 0us
T: 0 ( 1234) P:80 I:1000 C:  10000 Min:      2 Act:    3 Avg:    4 Max:      40
T: 1 ( 1235) P:80 I:1500 C:   6667 Min:      3 Act:    5 Avg:    6 Max:      25
"""


class NullLoad:
    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture()
def tools_present(monkeypatch):
    monkeypatch.setattr(borebench_suites, "missing_tools", lambda names: [])


# parsers

def test_parse_bogo_ops():
    assert parse_bogo_ops(STRESS_NG_BRIEF) == 1600.62
    assert parse_bogo_ops("stress-ng: info: [1] passed: 4: cpu (4)") is None


def test_parse_hackbench_time_is_line_anchored():
    assert parse_hackbench_time(HACKBENCH) == 12.345
    assert parse_hackbench_time("Elapsed Time: 3.0") is None


def test_parse_sysbench_eps():
    assert parse_sysbench_eps(SYSBENCH) == 5123.45
    assert parse_sysbench_eps("garbage") is None


def test_parse_cyclictest_folds_threads():
    assert parse_cyclictest(CYCLICTEST) == {"min_us": 2.0, "avg_us": 5.0,
                                            "max_us": 40.0}
    assert parse_cyclictest("# no threads ran") == {}


def test_parse_task_times():
    out = "Task 1: 0.501000 seconds\nnoise\nTask 2: 0.499000 seconds\n"
    assert parse_task_times(out) == [0.501, 0.499]


# scenario tables

def test_throughput_scenarios(make_config):
    cfg = make_config(num_cpus=6, stress_method="matrixprod")
    scenarios = throughput_scenarios(cfg)
    assert [s.number for s in scenarios] == [1, 2, 3, 4, 5]
    assert scenarios[0].cmd[:3] == ("stress-ng", "--cpu", "6")
    assert scenarios[0].cmd[-2:] == ("--cpu-method", "matrixprod")
    assert "--threads=6" in scenarios[3].cmd
    assert scenarios[4].cmd[:2] == ("hackbench", "-p")


def test_responsiveness_scenarios(make_config):
    scenarios = responsiveness_scenarios(make_config(num_cpus=1))
    assert [s.kind for s in scenarios] == ["hackbench", "hackbench",
                                           "cyclictest", "hackbench"]
    assert scenarios[0].background[0][:5] == ("stress-ng", "--cpu", "1",
                                               "--cpu-load", "95")
    # half the cores, but never zero
    assert scenarios[3].background[0][2] == "1"
    assert len(scenarios[3].background) == 2
    assert not scenarios[2].fatal


# aggregation

def test_aggregate_fairness():
    samples = [{"mean_s": 1.0, "stdev_s": 0.1}, {"mean_s": 3.0, "stdev_s": 0.3}]
    values = aggregate("fairness", samples)
    assert values["mean_s"] == pytest.approx(2.0)
    assert values["stdev_s"] == pytest.approx(0.2)
    assert values["run_stdev_s"] == pytest.approx(1.0)
    assert values["cv_pct"] == pytest.approx(10.0)


def test_aggregate_skips_missing_keys():
    values = aggregate("stress", [{"elapsed_s": 1.0}, {"elapsed_s": 3.0,
                                                       "bogo_ops_s": 10.0}])
    assert values == {"elapsed_s": 2.0, "bogo_ops_s": 10.0}


# fairness fan-out

def fairness_dirs(run):
    return list(Path(tempfile.gettempdir()).glob(f"fairness_{os.getpid()}_{run}_*"))


def test_measure_fairness_runs_every_worker(make_config):
    cfg = make_config(fairness_tasks=8, fairness_size=5000)
    scenario = throughput_scenarios(cfg)[2]
    sample = measure_fairness(cfg, scenario, 101)
    assert set(sample) == {"mean_s", "stdev_s"}
    assert sample["mean_s"] > 0
    assert sample["stdev_s"] >= 0
    assert fairness_dirs(101) == []


@pytest.mark.skipif(shutil.which("false") is None, reason="needs false(1)")
def test_measure_fairness_worker_failure(make_config):
    cfg = make_config(interpreter=shutil.which("false"))
    with pytest.raises(CommandFailed):
        measure_fairness(cfg, throughput_scenarios(cfg)[2], 102)
    assert fairness_dirs(102) == []


def test_measure_fairness_interrupted(make_config, monkeypatch):
    started = []
    interrupted = []

    class InterruptedPopen(subprocess.Popen):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            started.append(self)

        def wait(self, timeout=None):
            if not interrupted:
                interrupted.append(self)
                raise KeyboardInterrupt
            return super().wait(timeout)

    monkeypatch.setattr(borebench_suites.subprocess, "Popen", InterruptedPopen)
    cfg = make_config(fairness_tasks=4)
    with pytest.raises(KeyboardInterrupt):
        measure_fairness(cfg, throughput_scenarios(cfg)[2], 103)
    assert len(started) == 4
    assert all(p.returncode is not None for p in started)
    assert fairness_dirs(103) == []


# cache drop

def test_drop_caches_denied_as_root(monkeypatch, tmp_path):
    monkeypatch.setattr(borebench_suites, "is_root", lambda: True)
    monkeypatch.setattr(borebench_suites, "DROP_CACHES",
                        tmp_path / "missing" / "drop_caches")
    assert drop_caches() is False


def test_drop_caches_sudo_refused(monkeypatch):
    calls = []

    def refuse(cmd, input_text=None, timeout=None):
        calls.append(cmd)
        return 1, "sudo: a password is required"

    monkeypatch.setattr(borebench_suites, "is_root", lambda: False)
    monkeypatch.setattr(borebench_suites.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(borebench_suites, "has_passwordless_sudo", lambda: True)
    monkeypatch.setattr(borebench_suites, "run_cmd_capture", refuse)
    assert drop_caches() is False
    assert calls[0][:3] == ["sudo", "-n", "tee"]


def test_drop_caches_without_sudo(monkeypatch):
    monkeypatch.setattr(borebench_suites, "is_root", lambda: False)
    monkeypatch.setattr(borebench_suites.shutil, "which", lambda name: None)
    assert drop_caches() is False


def test_stabilize_survives_denied_drop(make_config, monkeypatch, tmp_path):
    monkeypatch.setattr(borebench_suites, "is_root", lambda: True)
    monkeypatch.setattr(borebench_suites, "DROP_CACHES",
                        tmp_path / "missing" / "drop_caches")
    stabilize(make_config(drop_caches=True))


# background load

def test_background_load_kills_processes():
    sleeper = [sys.executable, "-c", "import time; time.sleep(60)"]
    with BackgroundLoad([sleeper, sleeper]) as load:
        procs = list(load.procs)
        assert all(p.poll() is None for p in procs)
    assert all(p.returncode is not None for p in procs)


def test_background_load_missing_binary():
    with pytest.raises(CommandFailed) as exc:
        with BackgroundLoad([["no-such-stress-tool-xyz"]]):
            pass
    assert exc.value.returncode == 127


# scenario / suite driver

def test_repeated_mode_skips_failed_iteration(make_config, fake_commands):
    cfg = make_config(runs=3)
    fake_commands.outputs["hackbench"] = [(0, "Time: 1.0\n"), (1, "boom"),
                                          (0, "Time: 3.0\n")]
    scenario = throughput_scenarios(cfg)[1]
    with ResultArtifact(cfg) as artifact:
        result = run_scenario(cfg, scenario, artifact)
    assert (result.runs_ok, result.runs_total) == (2, 3)
    assert result.values["reported_s"] == pytest.approx(2.0)
    assert not result.failed
    text = cfg.result_file.read_text()
    assert "TEST 2: Server-Style Parallel Task Handling" in text
    assert "Successful runs: 2/3" in text
    assert "Reported Time: 2.000s" in text


def test_single_pass_abort(make_config, fake_commands, tools_present):
    cfg = make_config(runs=1)
    fake_commands.outputs["stress-ng"] = [(0, STRESS_NG_BRIEF)]
    fake_commands.outputs["hackbench"] = [(1, "Creating fdpair (error: Too many open files)")]
    assert run_suite(cfg) == 1
    text = cfg.result_file.read_text()
    assert "TEST 1: Maximum CPU Throughput" in text
    assert "Average bogo ops/s: 1600.62" in text
    assert "FAILED: hackbench -g 50 -l 1000 -s 512 failed (exit 1)" in text
    assert "TEST 3:" not in text
    assert "BENCHMARK ABORTED" in text
    assert cfg.log_file.exists()


def test_cyclictest_failure_is_not_fatal(make_config, fake_commands, tools_present,
                                         monkeypatch):
    monkeypatch.setattr(borebench_suites, "BackgroundLoad", NullLoad)
    cfg = make_config(category="responsiveness", runs=1)
    fake_commands.outputs["hackbench"] = [(0, HACKBENCH)]
    fake_commands.outputs["cyclictest"] = [(1, "Permission denied")]
    assert run_suite(cfg) == 0
    text = cfg.result_file.read_text()
    assert "FAILED: no successful runs" in text
    assert "TEST 4: Interactive Task Latency Under Mixed Workload" in text
    assert "BENCHMARK COMPLETED" in text


def test_missing_tool_creates_no_report(make_config, monkeypatch, capsys):
    monkeypatch.setattr(borebench_suites, "missing_tools", lambda names: ["sysbench"])
    cfg = make_config()
    assert run_suite(cfg) == 1
    assert not cfg.result_file.exists()
    assert "sysbench not found" in capsys.readouterr().out


def test_suite_output_is_comparable(make_config, fake_commands, tools_present):
    fake_commands.outputs["stress-ng"] = [(0, STRESS_NG_BRIEF)]
    fake_commands.outputs["hackbench"] = [(0, HACKBENCH)]
    fake_commands.outputs["sysbench"] = [(0, SYSBENCH)]
    bore = make_config(scheduler="BORE")
    default = make_config(scheduler="DEFAULT")
    assert run_suite(bore) == 0
    assert run_suite(default) == 0

    cmp = compare_files(bore.result_file, default.result_file)
    assert (cmp.sched1, cmp.sched2) == ("BORE", "DEFAULT")
    assert all(m.complete for m in cmp.metrics)
    eps = next(m for m in cmp.metrics if m.rule.label == "Events per second")
    assert eps.verdict == "tie"
