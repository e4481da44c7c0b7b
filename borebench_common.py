"""
Shared infrastructure for bore-bench.

Used by borebench.py (command manager) and the detect, suites, compare,
setup and metrics modules.
"""

import logging
import os
import platform
import shlex
import socket
import statistics
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


# CONFIGURATION

STRESS_TIMEOUT = 30
SYSBENCH_TIMEOUT = 60
SYSBENCH_MAX_PRIME = 20000
FAIRNESS_TASKS = 8
FAIRNESS_COMPUTATION_SIZE = 2_000_000
CYCLICTEST_ITERATIONS = 10000
CYCLICTEST_PRIORITY = 80
STRESS_RAMPUP_DELAY = 3
MIXED_RAMPUP_DELAY = 2
CLEANUP_DELAY = 2

# Repetition defaults per suite; 1 means single-pass (strict) mode
DEFAULT_RUNS = {"throughput": 5, "responsiveness": 1}

# stabilize(): sleep before and after the cache drop, pause after each run
SETTLE_SECS = 1.0
SETTLE_AFTER_SECS = 2.0
RUN_PAUSE_SECS = 2.0

DROP_CACHES = Path("/proc/sys/vm/drop_caches")
CATEGORIES = ("throughput", "responsiveness")
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

log = logging.getLogger("borebench")


# =============================================================================
# CONSOLE / LOGGING
# =============================================================================

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
RED = "\033[0;31m"
GREEN = "\033[0;32m"
YELLOW = "\033[0;33m"
BLUE = "\033[0;34m"
CYAN = "\033[0;36m"


def use_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    return sys.stdout.isatty()


def paint(text: str, *codes: str) -> str:
    if not codes or not use_color():
        return text
    return "".join(codes) + text + RESET


def _timestamp() -> str:
    return datetime.now().strftime("[%H:%M:%S]")


def _emit(marker: str, color: str, msg: str) -> None:
    print(f"{_timestamp()} {paint(marker, color)} {msg}", flush=True)


def log_info(msg: str) -> None:
    log.info(msg)
    _emit("ℹ", CYAN, msg)


def log_ok(msg: str) -> None:
    log.info(msg)
    _emit("✓", GREEN, msg)


def log_warn(msg: str) -> None:
    log.warning(msg)
    _emit("⚠", YELLOW, paint(msg, YELLOW))


def log_error(msg: str) -> None:
    log.error(msg)
    _emit("✗", RED, paint(msg, RED))


def attach_log_file(path: Path) -> logging.Handler:
    """Route the borebench logger to a diagnostic log file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    log.setLevel(logging.DEBUG)
    log.addHandler(handler)
    return handler


def detach_log_file(handler: logging.Handler) -> None:
    log.removeHandler(handler)
    handler.close()


def print_header(title: str) -> None:
    bar = "=" * 64
    print()
    print(paint(bar, BOLD, BLUE))
    print(paint(title, BOLD, BLUE))
    print(paint(bar, BOLD, BLUE), flush=True)


# =============================================================================
# COMMANDS
# =============================================================================

class CommandFailed(Exception):
    """An external benchmark command exited non-zero or could not start."""

    def __init__(self, cmd: list, returncode: int, output: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        super().__init__(f"{format_cmd(cmd)} failed (exit {returncode})")


def format_cmd(cmd: list) -> str:
    return " ".join(shlex.quote(str(c)) for c in cmd)


def run_cmd_capture(cmd: list, input_text: str | None = None,
                    timeout: float | None = None) -> tuple[int, str]:
    """Run a command and capture stdout and stderr combined."""
    try:
        result = subprocess.run(
            [str(c) for c in cmd], input=input_text, text=True,
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT, timeout=timeout,
        )
    except FileNotFoundError:
        return 127, f"{cmd[0]}: command not found"
    return result.returncode, result.stdout


def is_root() -> bool:
    return os.geteuid() == 0


def has_passwordless_sudo() -> bool:
    try:
        r = subprocess.run(["sudo", "-n", "true"],
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except FileNotFoundError:
        return False
    return r.returncode == 0


# =============================================================================
# STATISTICS
# =============================================================================

def mean_stdev(values: list[float]) -> tuple[float, float]:
    """Arithmetic mean and population standard deviation (divide by N)."""
    if not values:
        return 0.0, 0.0
    if len(values) == 1:
        return float(values[0]), 0.0
    return statistics.fmean(values), statistics.pstdev(values)


def coefficient_of_variation(mean: float, stdev: float) -> float | None:
    """Standard deviation as a percentage of the mean."""
    if mean == 0:
        return None
    return stdev / mean * 100


# =============================================================================
# RUN CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class BenchConfig:
    """Everything a benchmark run needs, built once at startup."""

    category: str
    scheduler: str
    detected_by: str
    kernel_version: str
    hostname: str
    timestamp: str
    num_cpus: int
    runs: int
    output_dir: Path
    interpreter: str = sys.executable
    stress_timeout: int = STRESS_TIMEOUT
    stress_method: str | None = None
    sysbench_timeout: int = SYSBENCH_TIMEOUT
    sysbench_max_prime: int = SYSBENCH_MAX_PRIME
    fairness_tasks: int = FAIRNESS_TASKS
    fairness_size: int = FAIRNESS_COMPUTATION_SIZE
    cyclictest_iterations: int = CYCLICTEST_ITERATIONS
    cyclictest_priority: int = CYCLICTEST_PRIORITY
    stress_rampup_delay: float = STRESS_RAMPUP_DELAY
    mixed_rampup_delay: float = MIXED_RAMPUP_DELAY
    cleanup_delay: float = CLEANUP_DELAY
    settle_secs: float = SETTLE_SECS
    settle_after_secs: float = SETTLE_AFTER_SECS
    run_pause_secs: float = RUN_PAUSE_SECS
    drop_caches: bool = True
    prometheus: bool = True

    @property
    def single_pass(self) -> bool:
        return self.runs == 1

    @property
    def stem(self) -> str:
        return f"{self.category}_{self.scheduler}_{self.timestamp}"

    @property
    def result_file(self) -> Path:
        return self.output_dir / f"{self.stem}.txt"

    @property
    def log_file(self) -> Path:
        return self.output_dir / f"{self.stem}.log"

    @property
    def prom_file(self) -> Path:
        return self.output_dir / f"{self.stem}.prom"

    @classmethod
    def from_args(cls, category: str, args, env=None) -> "BenchConfig":
        # Deferred: borebench_detect imports this module.
        from borebench_detect import detect_scheduler

        env = os.environ if env is None else env
        if getattr(args, "scheduler", None):
            env = {**env, "SCHEDULER_TYPE": args.scheduler}
        detection = detect_scheduler(env=env)
        runs = getattr(args, "runs", None)
        if runs is None:
            runs = DEFAULT_RUNS[category]
        if runs < 1:
            raise ValueError(f"runs must be at least 1, got {runs}")
        return cls(
            category=category,
            scheduler=detection.label.value,
            detected_by=detection.method,
            kernel_version=platform.release(),
            hostname=socket.gethostname(),
            timestamp=datetime.now().strftime(TIMESTAMP_FORMAT),
            num_cpus=os.cpu_count() or 1,
            runs=runs,
            output_dir=Path(getattr(args, "output_dir", None) or Path.cwd()),
            stress_method=getattr(args, "stress_method", None),
            drop_caches=not getattr(args, "no_drop_caches", False),
            prometheus=not getattr(args, "no_prometheus", False),
        )
