"""
Scheduler detection: decide whether the running kernel uses BORE or the
stock EEVDF/CFS scheduler.

Rules are tried in order and the first match wins. Missing files and
commands never raise; they simply do not match.
"""

import enum
import gzip
import os
import platform
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from borebench_common import BOLD, CYAN, GREEN, YELLOW, paint


class SchedulerLabel(str, enum.Enum):
    BORE = "BORE"
    DEFAULT = "DEFAULT"


OVERRIDE_VAR = "SCHEDULER_TYPE"
OVERRIDE_SYNONYMS = {
    "BORE": SchedulerLabel.BORE,
    "BORE_SCHEDULER": SchedulerLabel.BORE,
    "DEFAULT": SchedulerLabel.DEFAULT,
    "EEVDF": SchedulerLabel.DEFAULT,
    "CFS": SchedulerLabel.DEFAULT,
}

BORE_CONFIG_RE = re.compile(r"CONFIG_SCHED_BORE\s*=\s*y", re.IGNORECASE)
EEVDF_CONFIG_RE = re.compile(r"CONFIG_SCHED_EEVDF\s*=\s*y", re.IGNORECASE)
SCHED_CONFIG_LINE_RE = re.compile(r"CONFIG_SCHED_(BORE|EEVDF|CFS)", re.IGNORECASE)
DMESG_FILTER_RE = re.compile(r"scheduler|bore|eevdf", re.IGNORECASE)
DMESG_BORE_RE = re.compile(r"bore.*scheduler|scheduler.*bore", re.IGNORECASE)
DMESG_EEVDF_RE = re.compile(r"eevdf|earliest.*virtual.*deadline", re.IGNORECASE)
BORE_RELEASE_MARKERS = ("cachyos", "bore")


@dataclass(frozen=True)
class KernelPaths:
    boot_dir: Path = Path("/boot")
    proc_config: Path = Path("/proc/config.gz")
    sched_features: Path = Path("/sys/kernel/debug/sched_features")

    def boot_config(self, release: str) -> Path:
        return self.boot_dir / f"config-{release}"


@dataclass(frozen=True)
class Detection:
    label: SchedulerLabel
    method: str
    detail: str = ""

    def describe(self) -> str:
        if self.detail:
            return f"{self.label.value} (from {self.method}: {self.detail})"
        return f"{self.label.value} ({self.method})"


# PROBES

def label_from_override(value: str | None) -> SchedulerLabel | None:
    if not value:
        return None
    return OVERRIDE_SYNONYMS.get(value.strip().upper())


def label_from_config(text: str | None) -> SchedulerLabel | None:
    if not text:
        return None
    if BORE_CONFIG_RE.search(text):
        return SchedulerLabel.BORE
    if EEVDF_CONFIG_RE.search(text):
        return SchedulerLabel.DEFAULT
    return None


def label_from_dmesg(text: str | None) -> SchedulerLabel | None:
    if not text:
        return None
    lines = [l for l in text.splitlines() if DMESG_FILTER_RE.search(l)][:10]
    joined = "\n".join(lines)
    if DMESG_BORE_RE.search(joined):
        return SchedulerLabel.BORE
    if DMESG_EEVDF_RE.search(joined):
        return SchedulerLabel.DEFAULT
    return None


def label_from_release(release: str) -> SchedulerLabel | None:
    lowered = release.lower()
    if any(marker in lowered for marker in BORE_RELEASE_MARKERS):
        return SchedulerLabel.BORE
    return None


def label_from_sched_features(text: str | None) -> SchedulerLabel | None:
    if text and "BORE" in text.upper():
        return SchedulerLabel.BORE
    return None


def read_text(path: Path) -> str | None:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return None


def read_gzip_text(path: Path) -> str | None:
    try:
        with gzip.open(path, "rt", errors="replace") as f:
            return f.read()
    except (OSError, EOFError):
        return None


def read_dmesg() -> str | None:
    try:
        r = subprocess.run(["dmesg"], capture_output=True, text=True)
    except FileNotFoundError:
        return None
    return r.stdout if r.returncode == 0 else None


# DETECTION

def detect_scheduler(env=None, release: str | None = None,
                     paths: KernelPaths = KernelPaths(),
                     probe_dmesg: bool = False,
                     dmesg_text: str | None = None) -> Detection:
    """Classify the running scheduler, first matching rule wins.

    Boot messages are only consulted when probe_dmesg is set (the `detect`
    diagnostic); benchmark runs never look at them.
    """
    env = os.environ if env is None else env
    release = release if release is not None else platform.release()

    override = env.get(OVERRIDE_VAR)
    label = label_from_override(override)
    if label:
        return Detection(label, "env", override)

    config = paths.boot_config(release)
    label = label_from_config(read_text(config))
    if label:
        return Detection(label, "config", str(config))

    label = label_from_config(read_gzip_text(paths.proc_config))
    if label:
        return Detection(label, "config.gz", str(paths.proc_config))

    if probe_dmesg:
        if dmesg_text is None:
            dmesg_text = read_dmesg()
        label = label_from_dmesg(dmesg_text)
        if label:
            return Detection(label, "dmesg")

    label = label_from_release(release)
    if label:
        return Detection(label, "kernel version", release)

    label = label_from_sched_features(read_text(paths.sched_features))
    if label:
        return Detection(label, "sched_features", str(paths.sched_features))

    return Detection(SchedulerLabel.DEFAULT, "fallback - no detection method matched")


def diagnose(env=None, release: str | None = None,
             paths: KernelPaths = KernelPaths(),
             dmesg_text: str | None = None) -> str:
    """Walk every detection method and explain what each one sees."""
    env = os.environ if env is None else env
    release = release if release is not None else platform.release()
    if dmesg_text is None:
        dmesg_text = read_dmesg()
    lines = []

    lines.append(paint("Method 1: Environment Variable", CYAN))
    override = env.get(OVERRIDE_VAR)
    if override:
        lines.append(f"  {OVERRIDE_VAR}={paint(override, GREEN)}")
    else:
        lines.append(f"  {OVERRIDE_VAR}={paint('(not set)', YELLOW)}")
    lines.append("")

    lines.append(paint("Method 2: Kernel Config File", CYAN))
    config = paths.boot_config(release)
    config_text = read_text(config)
    if config_text is not None:
        lines.append(f"  Config file: {paint(str(config), GREEN)} (exists)")
        _append_config_lines(lines, config_text)
    else:
        lines.append(f"  Config file: {paint(str(config), YELLOW)} (not found)")
    lines.append("")

    lines.append(paint(f"Method 3: {paths.proc_config}", CYAN))
    gz_text = read_gzip_text(paths.proc_config)
    if gz_text is not None:
        lines.append(f"  {paths.proc_config}: {paint('exists', GREEN)}")
        _append_config_lines(lines, gz_text)
    else:
        lines.append(f"  {paths.proc_config}: {paint('not available', YELLOW)}")
    lines.append("")

    lines.append(paint("Method 4: dmesg (boot messages)", CYAN))
    sched_msgs = [l for l in (dmesg_text or "").splitlines()
                  if DMESG_FILTER_RE.search(l)][:5]
    if sched_msgs:
        lines.append("  Found scheduler-related messages:")
        lines.extend(f"    {l}" for l in sched_msgs)
    else:
        lines.append(f"  {paint('No scheduler-related messages found', YELLOW)}")
    lines.append("")

    lines.append(paint("Method 5: Kernel Version String", CYAN))
    lines.append(f"  Kernel version: {release}")
    if label_from_release(release):
        lines.append(f"  {paint('Contains cachyos or bore -> BORE', GREEN)}")
    else:
        lines.append(f"  {paint('No BORE indicators in version string', YELLOW)}")
    lines.append("")

    lines.append(paint(f"Method 6: sysfs ({paths.sched_features})", CYAN))
    features = read_text(paths.sched_features)
    if features is None:
        lines.append(f"  File: {paint('not available', YELLOW)}")
    elif label_from_sched_features(features):
        lines.append(f"  {paint('Contains BORE', GREEN)}")
    else:
        lines.append(f"  {paint('No BORE found', YELLOW)}")
    lines.append("")

    detection = detect_scheduler(env=env, release=release, paths=paths,
                                 probe_dmesg=True, dmesg_text=dmesg_text or "")
    lines.append(f"{paint('Detected Scheduler:', BOLD)} "
                 f"{paint(detection.describe(), GREEN)}")
    lines.append("")
    lines.extend(recommendations(detection, override))
    return "\n".join(lines)


def _append_config_lines(lines: list[str], text: str) -> None:
    found = [l for l in text.splitlines() if SCHED_CONFIG_LINE_RE.search(l)][:5]
    if found:
        lines.append("  Found scheduler configs:")
        lines.extend(f"    {l}" for l in found)
    else:
        lines.append(f"  {paint('(no scheduler configs found)', YELLOW)}")


def recommendations(detection: Detection, override: str | None) -> list[str]:
    lines = []
    if detection.label is SchedulerLabel.BORE:
        lines.append(f"BORE scheduler detected via {detection.method}")
        lines.append("  Result files will carry the '_BORE_' label")
        if detection.method == "kernel version":
            lines.append("  BORE is often a patch on top of CFS/EEVDF and may not")
            lines.append("  set CONFIG_SCHED_BORE; the version string is reliable on CachyOS.")
    elif not override:
        lines.append("DEFAULT scheduler detected (or fallback)")
        lines.append("  If you are running a BORE kernel that is not detected:")
        lines.append(f"  {paint('export SCHEDULER_TYPE=BORE', CYAN)}")
    else:
        lines.append(f"DEFAULT scheduler (from {OVERRIDE_VAR})")
    lines.append("")
    lines.append("To override detection manually:")
    lines.append(f"  {paint('export SCHEDULER_TYPE=BORE', CYAN)}  # or DEFAULT")
    return lines
