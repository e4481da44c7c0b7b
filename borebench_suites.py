"""
Benchmark suites: throughput/fairness and responsiveness.

Each suite is a fixed, ordered table of scenarios. Every scenario invokes one
external tool, times it, scrapes its metrics and appends a `TEST <n>:` block
to the result file. Those markers are what `borebench compare` reads back.
"""

import os
import re
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from borebench_common import (
    BOLD, CYAN, DIM, DROP_CACHES, GREEN, BenchConfig, CommandFailed,
    attach_log_file, coefficient_of_variation, detach_log_file, format_cmd,
    has_passwordless_sudo, is_root, log, log_error, log_info, log_ok,
    log_warn, mean_stdev, paint, run_cmd_capture,
)
from borebench_setup import SUITE_TOOLS, install_hint, missing_tools


SEPARATOR = "-" * 40


@dataclass(frozen=True)
class Scenario:
    number: int
    title: str
    description: str
    kind: str
    cmd: tuple[str, ...] = ()
    background: tuple[tuple[str, ...], ...] = ()
    rampup: float = 0.0
    fatal: bool = True
    hint: str = ""


@dataclass
class ScenarioResult:
    scenario: Scenario
    values: dict[str, float] = field(default_factory=dict)
    runs_ok: int = 0
    runs_total: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or self.runs_ok == 0


class ScenarioFailed(Exception):
    """A fatal scenario failed in single-pass mode; the suite stops."""

    def __init__(self, scenario: Scenario, reason: str):
        self.scenario = scenario
        self.reason = reason
        super().__init__(f"TEST {scenario.number} ({scenario.title}): {reason}")


# SCENARIO TABLES

def throughput_scenarios(cfg: BenchConfig) -> list[Scenario]:
    stress = ["stress-ng", "--cpu", str(cfg.num_cpus),
              "--timeout", f"{cfg.stress_timeout}s", "--metrics-brief"]
    if cfg.stress_method:
        stress += ["--cpu-method", cfg.stress_method]
    return [
        Scenario(1, "Maximum CPU Throughput",
                 f"stress-ng on all {cfg.num_cpus} cores for {cfg.stress_timeout}s",
                 "stress", tuple(stress)),
        Scenario(2, "Server-Style Parallel Task Handling",
                 "50 groups, 1000 loops, 512B messages",
                 "hackbench", ("hackbench", "-g", "50", "-l", "1000", "-s", "512")),
        Scenario(3, "CPU Time Fairness",
                 f"{cfg.fairness_tasks} identical CPU-bound tasks started together",
                 "fairness"),
        Scenario(4, "Sustained CPU Throughput",
                 f"sysbench cpu, {cfg.num_cpus} threads, {cfg.sysbench_timeout}s",
                 "sysbench",
                 ("sysbench", "cpu", f"--cpu-max-prime={cfg.sysbench_max_prime}",
                  f"--threads={cfg.num_cpus}", f"--time={cfg.sysbench_timeout}", "run")),
        Scenario(5, "Multi-Process Parallel Throughput",
                 "pipe mode, 30 groups, 500 loops, 256B messages",
                 "hackbench",
                 ("hackbench", "-p", "-g", "30", "-l", "500", "-s", "256")),
    ]


def responsiveness_scenarios(cfg: BenchConfig) -> list[Scenario]:
    half = max(cfg.num_cpus // 2, 1)
    timeout = f"{cfg.stress_timeout}s"
    return [
        Scenario(1, "Scheduling Responsiveness Under CPU Stress",
                 "Heavy background task (95% CPU) + interactive task switching",
                 "hackbench", ("hackbench", "-s", "256", "-l", "100", "-g", "5"),
                 background=(("stress-ng", "--cpu", str(cfg.num_cpus),
                              "--cpu-load", "95", "--timeout", timeout),),
                 rampup=cfg.stress_rampup_delay),
        Scenario(2, "Context Switch Latency",
                 "Rapid task switching via inter-process communication",
                 "hackbench", ("hackbench", "-p", "-s", "512", "-l", "200", "-g", "10")),
        Scenario(3, "Wake-up Latency for Sleeping Tasks",
                 "Application waking from idle state (e.g., click event)",
                 "cyclictest",
                 ("cyclictest", "-t1", f"-p{cfg.cyclictest_priority}",
                  f"-l{cfg.cyclictest_iterations}", "-q"),
                 fatal=False,
                 hint="cyclictest may need root for accurate results - check permissions"),
        Scenario(4, "Interactive Task Latency Under Mixed Workload",
                 "Simulating desktop/gaming: Background CPU + I/O + user interaction",
                 "hackbench", ("hackbench", "-s", "128", "-l", "50", "-g", "3"),
                 background=(("stress-ng", "--cpu", str(half), "--cpu-load", "100",
                              "--timeout", timeout),
                             ("stress-ng", "--io", "2", "--timeout", timeout)),
                 rampup=cfg.mixed_rampup_delay),
    ]


SUITES = {
    "throughput": throughput_scenarios,
    "responsiveness": responsiveness_scenarios,
}

SUITE_TITLES = {
    "throughput": "THROUGHPUT & FAIRNESS BENCHMARK",
    "responsiveness": "RESPONSIVENESS BENCHMARK",
}


# OUTPUT PARSERS

BOGO_OPS_RE = re.compile(
    r"\]\s+cpu\s+\d+\s+[\d.]+\s+[\d.]+\s+[\d.]+\s+([\d.]+)")
HACKBENCH_TIME_RE = re.compile(r"^Time:\s*([\d.]+)", re.MULTILINE)
SYSBENCH_EPS_RE = re.compile(r"events per second:\s*([\d.]+)")
CYCLICTEST_RE = re.compile(r"Min:\s*(\d+).*?Avg:\s*(\d+).*?Max:\s*(\d+)")
TASK_RE = re.compile(r"^Task\s+(\d+):\s*([\d.]+)\s+seconds", re.MULTILINE)


def parse_bogo_ops(output: str) -> float | None:
    """bogo ops/s (real time) from `stress-ng --metrics-brief`."""
    m = BOGO_OPS_RE.search(output)
    return float(m.group(1)) if m else None


def parse_hackbench_time(output: str) -> float | None:
    m = HACKBENCH_TIME_RE.search(output)
    return float(m.group(1)) if m else None


def parse_sysbench_eps(output: str) -> float | None:
    m = SYSBENCH_EPS_RE.search(output)
    return float(m.group(1)) if m else None


def parse_cyclictest(output: str) -> dict[str, float]:
    """Min of mins, mean of averages, max of maxes across cyclictest threads."""
    rows = [tuple(int(v) for v in m.groups())
            for m in (CYCLICTEST_RE.search(l) for l in output.splitlines()
                      if l.lstrip().startswith("T:"))
            if m]
    if not rows:
        return {}
    return {
        "min_us": float(min(r[0] for r in rows)),
        "avg_us": sum(r[1] for r in rows) / len(rows),
        "max_us": float(max(r[2] for r in rows)),
    }


def parse_task_times(output: str) -> list[float]:
    return [float(m.group(2)) for m in TASK_RE.finditer(output)]


# SYSTEM PREPARATION

def drop_caches() -> bool:
    """Best-effort page cache drop; needs root or passwordless sudo."""
    if is_root():
        try:
            DROP_CACHES.write_text("3\n")
            return True
        except OSError as e:
            log.debug(f"drop_caches failed: {e}")
            return False
    if shutil.which("sudo") and has_passwordless_sudo():
        rc, _ = run_cmd_capture(["sudo", "-n", "tee", str(DROP_CACHES)],
                                input_text="3\n")
        return rc == 0
    return False


def stabilize(cfg: BenchConfig) -> None:
    """Flush buffers and let the system settle before a measurement."""
    os.sync()
    time.sleep(cfg.settle_secs)
    if cfg.drop_caches:
        drop_caches()
    time.sleep(cfg.settle_after_secs)


class BackgroundLoad:
    """Background stress generators that live for one measurement.

    Every process gets its own process group so stress-ng's forked workers
    are killed with it. Anything still running on exit is killed and reaped,
    including when the measurement raised or the user hit Ctrl+C.
    """

    def __init__(self, cmds, rampup: float = 0.0, cooldown: float = 0.0):
        self.cmds = [list(c) for c in cmds]
        self.rampup = rampup
        self.cooldown = cooldown
        self.procs: list[subprocess.Popen] = []

    def __enter__(self):
        for cmd in self.cmds:
            log_info(f"Launching background load: {format_cmd(cmd)}")
            try:
                proc = subprocess.Popen(
                    cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                    preexec_fn=os.setpgrp,
                )
            except FileNotFoundError as e:
                self.stop()
                raise CommandFailed(cmd, 127, str(e)) from e
            self.procs.append(proc)
        if self.procs:
            time.sleep(self.rampup)
            log_ok("Background load active")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def stop(self):
        if not self.procs:
            return
        for proc in self.procs:
            if proc.poll() is None:
                try:
                    os.killpg(proc.pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
        for proc in self.procs:
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                proc.wait()
        self.procs = []
        log_info("Background load stopped")
        time.sleep(self.cooldown)


# MEASUREMENTS

def timed_capture(cmd: list) -> tuple[float, str]:
    """Run a benchmark command, return (wall-clock seconds, output)."""
    log_info(f"Running: {format_cmd(cmd)}")
    start = time.monotonic()
    rc, output = run_cmd_capture(cmd)
    elapsed = time.monotonic() - start
    if output.strip():
        log.debug(f"{cmd[0]} output:\n{output.rstrip()}")
    if rc != 0:
        raise CommandFailed(cmd, rc, output)
    return elapsed, output


def measure_stress(cfg: BenchConfig, scenario: Scenario, run: int) -> dict[str, float]:
    elapsed, output = timed_capture(list(scenario.cmd))
    sample = {"elapsed_s": elapsed}
    ops = parse_bogo_ops(output)
    if ops is None:
        log_warn("Could not extract bogo ops/s from stress-ng output")
    else:
        sample["bogo_ops_s"] = ops
    return sample


def measure_hackbench(cfg: BenchConfig, scenario: Scenario, run: int) -> dict[str, float]:
    elapsed, output = timed_capture(list(scenario.cmd))
    sample = {"elapsed_s": elapsed}
    reported = parse_hackbench_time(output)
    if reported is not None:
        sample["reported_s"] = reported
    return sample


def measure_sysbench(cfg: BenchConfig, scenario: Scenario, run: int) -> dict[str, float]:
    _, output = timed_capture(list(scenario.cmd))
    eps = parse_sysbench_eps(output)
    if eps is None or eps == 0:
        log_warn("Could not extract events per second from sysbench output")
        return {}
    return {"events_s": eps}


def measure_cyclictest(cfg: BenchConfig, scenario: Scenario, run: int) -> dict[str, float]:
    cmd = list(scenario.cmd)
    if not is_root() and shutil.which("sudo"):
        cmd = ["sudo"] + cmd
    _, output = timed_capture(cmd)
    latency = parse_cyclictest(output)
    if not latency:
        log_warn("Could not extract latencies from cyclictest output")
    return latency


FAIRNESS_WORKER = """\
import sys
import time

start = time.perf_counter()
sum([i * i for i in range({size})])
print(f"Task {{sys.argv[1]}}: {{time.perf_counter() - start:.6f}} seconds", flush=True)
"""


def measure_fairness(cfg: BenchConfig, scenario: Scenario, run: int) -> dict[str, float]:
    """Start N identical workers at once, join them all, fold their times.

    Each worker reports its own completion time into a private file inside
    a per-run temporary directory, so there is nothing to lock.
    """
    prefix = f"fairness_{os.getpid()}_{run}_"
    with tempfile.TemporaryDirectory(prefix=prefix) as tmp:
        tmp = Path(tmp)
        script = tmp / "worker.py"
        script.write_text(FAIRNESS_WORKER.format(size=cfg.fairness_size))
        cmd = [cfg.interpreter, str(script)]
        log_info(f"Starting {cfg.fairness_tasks} fairness workers")

        workers: list[tuple[subprocess.Popen, Path]] = []
        try:
            for task in range(1, cfg.fairness_tasks + 1):
                out_path = tmp / f"task_{task}.out"
                with open(out_path, "w") as out:
                    proc = subprocess.Popen(cmd + [str(task)], stdout=out,
                                            stderr=subprocess.STDOUT)
                workers.append((proc, out_path))
            for proc, _ in workers:
                proc.wait()
        finally:
            for proc, _ in workers:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()

        output = "".join(p.read_text() for _, p in workers)
        log.debug(f"fairness run {run}:\n{output.rstrip()}")
        failed = [p.returncode for p, _ in workers if p.returncode != 0]
        if failed:
            raise CommandFailed(cmd, failed[0], output)

    times = parse_task_times(output)
    if not times:
        log_warn("No fairness worker reported a completion time")
        return {}
    mean, stdev = mean_stdev(times)
    log_info(f"Fairness run {run}: mean={mean:.6f}s stdev={stdev:.6f}s "
             f"({len(times)} tasks)")
    return {"mean_s": mean, "stdev_s": stdev}


MEASUREMENTS = {
    "stress": measure_stress,
    "hackbench": measure_hackbench,
    "sysbench": measure_sysbench,
    "cyclictest": measure_cyclictest,
    "fairness": measure_fairness,
}

# Report lines per measurement kind; the comparator's patterns read these.
REPORT_FORMATS = {
    "stress": [("elapsed_s", "Average execution time: {:.6f}s"),
               ("bogo_ops_s", "Average bogo ops/s: {:.2f}")],
    "hackbench": [("elapsed_s", "Average: {:.6f}s"),
                  ("reported_s", "Reported Time: {:.3f}s")],
    "fairness": [("mean_s", "Average Mean: {:.6f}s"),
                 ("stdev_s", "StdDev: {:.6f}s"),
                 ("cv_pct", "Coefficient of Variation: {:.2f}%"),
                 ("run_stdev_s", "Run-to-run StdDev: {:.6f}s")],
    "sysbench": [("events_s", "Average events per second: {:.2f}")],
    "cyclictest": [("min_us", "Min Latency: {:.2f}us"),
                   ("avg_us", "Avg Latency: {:.2f}us"),
                   ("max_us", "Max Latency: {:.2f}us")],
}


def aggregate(kind: str, samples: list[dict[str, float]]) -> dict[str, float]:
    """Mean of every metric over the runs that produced it."""
    values = {}
    keys = [k for k, _ in REPORT_FORMATS[kind]]
    for key in keys:
        seen = [s[key] for s in samples if key in s]
        if seen:
            values[key] = sum(seen) / len(seen)
    if kind == "fairness" and "mean_s" in values:
        _, values["run_stdev_s"] = mean_stdev([s["mean_s"] for s in samples])
        cv = coefficient_of_variation(values["mean_s"], values.get("stdev_s", 0.0))
        if cv is not None:
            values["cv_pct"] = cv
    return values


# RESULT FILE

class ResultArtifact:
    """The report file plus its diagnostic log, open for one suite run.

    Lines go to the file as plain text and are echoed to the console.
    """

    def __init__(self, cfg: BenchConfig):
        self.path = cfg.result_file
        self.log_path = cfg.log_file
        self._file = None
        self._handler = None

    def __enter__(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")
        self._handler = attach_log_file(self.log_path)
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._file:
            self._file.close()
        if self._handler:
            detach_log_file(self._handler)
        return False

    def write(self, line: str = "", *style: str) -> None:
        self._file.write(line + "\n")
        self._file.flush()
        print(paint(line, *style) if line else line, flush=True)

    def header(self, cfg: BenchConfig) -> None:
        bar = "=" * 64
        self.write(bar, BOLD)
        self.write(f"{SUITE_TITLES[cfg.category]} - {cfg.scheduler} SCHEDULER", BOLD)
        self.write(bar, BOLD)
        self.write(f"Kernel Version: {cfg.kernel_version}")
        self.write(f"Scheduler Type: {cfg.scheduler} (detected via {cfg.detected_by})")
        self.write(f"CPU Cores: {cfg.num_cpus}")
        self.write(f"Runs: {cfg.runs}")
        self.write(f"Test Date: {time.strftime('%a %b %d %H:%M:%S %Z %Y')}")
        self.write(f"Hostname: {cfg.hostname}")

    def section(self, scenario: Scenario, cfg: BenchConfig) -> None:
        self.write()
        self.write(f"TEST {scenario.number}: {scenario.title}", BOLD, CYAN)
        self.write(f"Scenario: {scenario.description}", DIM)
        self.write(SEPARATOR, DIM)
        if scenario.kind == "fairness":
            self.write(f"Command: {cfg.interpreter} worker x{cfg.fairness_tasks} "
                       f"(sum of squares, n={cfg.fairness_size})")
        else:
            self.write(f"Command: {format_cmd(list(scenario.cmd))}")
        for bg in scenario.background:
            self.write(f"Background: {format_cmd(list(bg))}")

    def result(self, result: ScenarioResult) -> None:
        for key, fmt in REPORT_FORMATS[result.scenario.kind]:
            if key in result.values:
                self.write(fmt.format(result.values[key]), GREEN)
        self.write(f"Successful runs: {result.runs_ok}/{result.runs_total}")
        if result.failed:
            self.write(f"FAILED: {result.error or 'no successful runs'}")


# SUITE DRIVER

def run_scenario(cfg: BenchConfig, scenario: Scenario,
                 artifact: ResultArtifact) -> ScenarioResult:
    """Run one scenario cfg.runs times and append its block to the report."""
    log.info(f"Starting Test {scenario.number}: {scenario.title}")
    artifact.section(scenario, cfg)
    measure = MEASUREMENTS[scenario.kind]
    samples = []

    for run in range(1, cfg.runs + 1):
        stabilize(cfg)
        try:
            with BackgroundLoad(scenario.background, scenario.rampup,
                                cfg.cleanup_delay if scenario.background else 0.0):
                sample = measure(cfg, scenario, run)
        except CommandFailed as e:
            if e.output.strip():
                log.debug(f"failed command output:\n{e.output.rstrip()}")
            if cfg.single_pass and scenario.fatal:
                artifact.write(f"FAILED: {e}")
                raise ScenarioFailed(scenario, str(e)) from e
            log_warn(f"TEST {scenario.number} run {run}/{cfg.runs} failed: {e}"
                     + (f" ({scenario.hint})" if scenario.hint else "")
                     + ("" if cfg.single_pass else ", skipping"))
            continue
        if not sample:
            log_warn(f"TEST {scenario.number} run {run}/{cfg.runs}: "
                     "no metrics extracted, skipping")
            continue
        samples.append(sample)
        if run < cfg.runs:
            time.sleep(cfg.run_pause_secs)

    result = ScenarioResult(scenario, aggregate(scenario.kind, samples),
                            runs_ok=len(samples), runs_total=cfg.runs)
    artifact.result(result)
    if result.failed:
        log_warn(f"Test {scenario.number} produced no results")
    else:
        log_ok(f"Test {scenario.number} completed "
               f"({result.runs_ok}/{result.runs_total} runs)")
    return result


def run_suite(cfg: BenchConfig) -> int:
    """Run every scenario of cfg.category in order. Returns an exit code."""
    log_info("Checking required tools...")
    missing = missing_tools(SUITE_TOOLS[cfg.category])
    if missing:
        for name in missing:
            log_error(f"{name} not found")
            log_info(f"Install: {install_hint(name)}")
        log_info("Run `borebench setup` to check every dependency")
        return 1
    log_ok("All tools available, starting tests...")

    scenarios = SUITES[cfg.category](cfg)
    results: list[ScenarioResult] = []
    status = 0

    with ResultArtifact(cfg) as artifact:
        log.info(f"Starting {cfg.category} benchmark on {cfg.scheduler} scheduler")
        artifact.header(cfg)
        try:
            for scenario in scenarios:
                results.append(run_scenario(cfg, scenario, artifact))
        except ScenarioFailed as e:
            log_error(f"Benchmark aborted: {e}")
            status = 1

        artifact.write()
        artifact.write("BENCHMARK COMPLETED" if status == 0 else "BENCHMARK ABORTED", BOLD)
        artifact.write(f"Results saved to: {artifact.path}", GREEN)
        artifact.write(f"Log saved to: {artifact.log_path}", GREEN)

    if cfg.prometheus and results:
        # Deferred so prometheus_client is only imported when exporting.
        from borebench_metrics import write_prometheus
        prom_path = write_prometheus(cfg, results)
        log_info(f"Prometheus metrics saved to {prom_path}")

    if status == 0:
        log_ok("Benchmark completed successfully")
    return status
