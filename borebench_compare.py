"""
Compare two result files (one per scheduler), metric by metric.

Sections are located by their `TEST <n>:` marker text, never by position.
Each metric has an ordered list of patterns; the first one that matches
inside the section wins. A metric that cannot be found in either file is
reported as a warning and the remaining metrics are still compared.
"""

import enum
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path

from borebench_common import (
    BLUE, BOLD, CATEGORIES, GREEN, RED, YELLOW, log_error, paint,
)

SECTION_WINDOW = 12
MARKER_RE = re.compile(r"^TEST (\d+):")
ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
NUM = r"(-?\d*\.?\d+)"
TWO_PLACES = Decimal("0.01")


class CompareError(Exception):
    """Input files are missing, unreadable or of different categories."""


class Polarity(enum.Enum):
    LOWER = "Lower is better"
    HIGHER = "Higher is better"


@dataclass(frozen=True)
class MetricRule:
    test: int
    label: str
    patterns: tuple[str, ...]
    polarity: Polarity
    unit: str = ""
    note: str = ""
    # words for v1 below / above v2
    words: tuple[str, str] = ("lower", "higher")

    @property
    def caption(self) -> str:
        return self.note or self.polarity.value


TIME_WORDS = ("faster", "slower")
TIME_PATTERNS = (rf"^Average: {NUM}", rf"^Time: {NUM}", rf"^Elapsed time: {NUM}")


def _time(test: int) -> MetricRule:
    return MetricRule(test, "Elapsed time", TIME_PATTERNS, Polarity.LOWER, "s",
                      words=TIME_WORDS)


TESTS = {
    "throughput": {
        1: "Maximum CPU Throughput",
        2: "Server Workload",
        3: "CPU Time Fairness",
        4: "Sustained Throughput",
        5: "Multi-Process Throughput",
    },
    "responsiveness": {
        1: "Response Under Load",
        2: "Context Switch Latency",
        3: "Wake-up Latency",
        4: "Interactive Under Mixed Load",
    },
}

METRICS = {
    "throughput": (
        MetricRule(1, "Execution time", (rf"^Average execution time: {NUM}",),
                   Polarity.LOWER, "s", words=TIME_WORDS),
        MetricRule(1, "Bogo ops/s", (rf"^Average bogo ops/s: {NUM}",),
                   Polarity.HIGHER, " ops/s"),
        _time(2),
        MetricRule(3, "Task completion time", (rf"^Average Mean: {NUM}",),
                   Polarity.LOWER, "s", words=TIME_WORDS),
        MetricRule(3, "StdDev", (rf"^StdDev: {NUM}",), Polarity.LOWER, "s",
                   "Lower StdDev = more fair"),
        MetricRule(4, "Events per second", (rf"^Average events per second: {NUM}",),
                   Polarity.HIGHER, " events/s"),
        _time(5),
    ),
    "responsiveness": (
        _time(1),
        _time(2),
        MetricRule(3, "Min latency", (rf"^Min Latency: {NUM}",),
                   Polarity.LOWER, "μs"),
        MetricRule(3, "Avg latency", (rf"^Avg Latency: {NUM}",),
                   Polarity.LOWER, "μs"),
        MetricRule(3, "Max latency",
                   (rf"^Max Latency: {NUM}", rf"^Average Max Latency: {NUM}"),
                   Polarity.LOWER, "μs"),
        _time(4),
    ),
}


@dataclass(frozen=True)
class MetricComparison:
    rule: MetricRule
    v1: Decimal | None
    v2: Decimal | None

    @property
    def complete(self) -> bool:
        return self.v1 is not None and self.v2 is not None

    @property
    def percent(self) -> Decimal | None:
        return percent_difference(self.v1, self.v2)

    @property
    def verdict(self) -> str | None:
        if not self.complete:
            return None
        return judge(self.v1, self.v2, self.rule.polarity)


@dataclass(frozen=True)
class Comparison:
    category: str
    file1: Path
    file2: Path
    sched1: str
    sched2: str
    metrics: tuple[MetricComparison, ...]


# EXTRACTION

def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def extract_section(text: str, test: int, window: int = SECTION_WINDOW) -> str:
    """Lines after the `TEST <test>:` marker, up to the next marker or window."""
    lines = strip_ansi(text).splitlines()
    for i, line in enumerate(lines):
        m = MARKER_RE.match(line.strip())
        if m and int(m.group(1)) == test:
            body = []
            for follow in lines[i + 1:i + 1 + window]:
                if MARKER_RE.match(follow.strip()):
                    break
                body.append(follow.strip())
            return "\n".join(body)
    return ""


def extract_metric(section: str, rule: MetricRule) -> Decimal | None:
    for pattern in rule.patterns:
        m = re.search(pattern, section, re.MULTILINE)
        if m:
            try:
                return Decimal(m.group(1))
            except InvalidOperation:
                continue
    return None


def percent_difference(v1: Decimal | None, v2: Decimal | None) -> Decimal | None:
    """(v1 - v2) / v2 * 100, rounded to 2 places; None when undefined."""
    if v1 is None or v2 is None or v2 == 0:
        return None
    return ((v1 - v2) / v2 * 100).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def judge(v1: Decimal, v2: Decimal, polarity: Polarity) -> str:
    """Verdict for v1 against v2, decided on the raw values."""
    if v1 == v2:
        return "tie"
    if polarity is Polarity.LOWER:
        return "better" if v1 < v2 else "worse"
    return "better" if v1 > v2 else "worse"


# INPUT RESOLUTION

def scheduler_of(path: Path) -> str:
    return "BORE" if "bore" in path.name.lower() else "DEFAULT"


def category_of(path: Path) -> str:
    return "responsiveness" if "responsiveness" in path.name.lower() else "throughput"


def find_latest_file(directory: Path, prefix: str) -> Path | None:
    candidates = [p for p in directory.glob(f"{prefix}*.txt") if p.is_file()]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def resolve_inputs(args: list[str], directory: Path = Path(".")) -> tuple[Path, Path]:
    """Map CLI arguments to a (file1, file2) pair.

    One argument selects the newest BORE and DEFAULT files of that category
    (BORE first); two arguments are taken as paths.
    """
    if len(args) == 2:
        return Path(args[0]), Path(args[1])
    if len(args) != 1:
        raise CompareError("Usage: borebench compare [responsiveness|throughput] "
                           "| borebench compare FILE1 FILE2")
    kind = args[0]
    if kind not in CATEGORIES:
        raise CompareError(f"Invalid argument: {kind}")
    bore = find_latest_file(directory, f"{kind}_BORE")
    default = find_latest_file(directory, f"{kind}_DEFAULT")
    if bore is None or default is None:
        raise CompareError(f"Could not find {kind} benchmark files for both "
                           f"schedulers in {directory}")
    return bore, default


# COMPARISON

def compare_texts(category: str, text1: str, text2: str) -> tuple[MetricComparison, ...]:
    out = []
    for rule in METRICS[category]:
        v1 = extract_metric(extract_section(text1, rule.test), rule)
        v2 = extract_metric(extract_section(text2, rule.test), rule)
        out.append(MetricComparison(rule, v1, v2))
    return tuple(out)


def compare_files(file1: Path, file2: Path) -> Comparison:
    """Compare two result files. Pure: same inputs, same Comparison."""
    for path in (file1, file2):
        if not path.is_file():
            raise CompareError(f"File not found: {path}")
    category = category_of(file1)
    if category_of(file2) != category:
        raise CompareError(f"Files are of different types: {file1.name} "
                           f"({category}) vs {file2.name} ({category_of(file2)})")
    try:
        text1 = file1.read_text(errors="replace")
        text2 = file2.read_text(errors="replace")
    except OSError as e:
        raise CompareError(f"Cannot read input: {e}") from e
    return Comparison(category, file1, file2, scheduler_of(file1),
                      scheduler_of(file2), compare_texts(category, text1, text2))


def _fmt(value: Decimal, unit: str) -> str:
    return f"{value}{unit}"


def describe(mc: MetricComparison, sched1: str, sched2: str) -> str:
    rule = mc.rule
    pct = mc.percent
    pct_str = "N/A" if pct is None else f"{pct:+}%"
    if mc.verdict == "tie":
        outcome = "no difference"
    else:
        word = rule.words[0] if mc.v1 < mc.v2 else rule.words[1]
        outcome = f"{sched1} is {word}" if pct is None else f"{sched1} is {abs(pct)}% {word}"
    return (f"{sched1}: {_fmt(mc.v1, rule.unit)} vs {sched2}: "
            f"{_fmt(mc.v2, rule.unit)} ({pct_str}, {outcome})")


def format_comparison(cmp: Comparison) -> str:
    bar = "=" * 64
    title = ("RESPONSIVENESS COMPARISON" if cmp.category == "responsiveness"
             else "THROUGHPUT & FAIRNESS COMPARISON")
    lines = [
        "",
        paint(bar, BOLD, BLUE),
        paint(f"{title}: {cmp.sched1} vs {cmp.sched2}", BOLD, BLUE),
        paint(bar, BOLD, BLUE),
        f"{paint(cmp.sched1 + ':', BOLD)} {cmp.file1.name}",
        f"{paint(cmp.sched2 + ':', BOLD)} {cmp.file2.name}",
    ]
    current = None
    for mc in cmp.metrics:
        rule = mc.rule
        if rule.test != current:
            current = rule.test
            lines.append("")
            lines.append(paint(f"Test {rule.test}: {TESTS[cmp.category][rule.test]}", BOLD))
        if not mc.complete:
            missing = [s for s, v in ((cmp.sched1, mc.v1), (cmp.sched2, mc.v2))
                       if v is None]
            lines.append(paint("⚠", YELLOW) + f" Could not extract {rule.label.lower()} "
                         f"values ({', '.join(missing)})")
            continue
        color = {"better": GREEN, "worse": RED}.get(mc.verdict, YELLOW)
        lines.append(paint(f"  → {rule.label} [{rule.caption}]: "
                           f"{describe(mc, cmp.sched1, cmp.sched2)}", color))
    lines += ["", paint(bar, BOLD, BLUE), paint("COMPARISON COMPLETE", BOLD, BLUE),
              paint(bar, BOLD, BLUE)]
    return "\n".join(lines)


def cmd_compare(args) -> int:
    try:
        file1, file2 = resolve_inputs(args.files, Path(args.dir))
        cmp = compare_files(file1, file2)
    except CompareError as e:
        log_error(str(e))
        return 1
    print(format_comparison(cmp))
    return 0
