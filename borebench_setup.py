"""Dependency check: verify the benchmark tools and explain how to install them."""

import re
import shutil
from dataclasses import dataclass

from borebench_common import (
    BOLD, CYAN, YELLOW, log_error, log_info, log_ok, log_warn, paint,
    print_header, run_cmd_capture,
)


@dataclass(frozen=True)
class Tool:
    name: str
    apt: str
    pacman: str
    version_cmd: tuple[str, ...] = ()


TOOLS = {
    "stress-ng": Tool("stress-ng", "stress-ng", "stress-ng", ("stress-ng", "--version")),
    "hackbench": Tool("hackbench", "rt-tests", "rt-tests"),
    "cyclictest": Tool("cyclictest", "rt-tests", "rt-tests"),
    "sysbench": Tool("sysbench", "sysbench", "sysbench", ("sysbench", "--version")),
    "python3": Tool("python3", "python3", "python", ("python3", "--version")),
}

SUITE_TOOLS = {
    "throughput": ["stress-ng", "hackbench", "sysbench"],
    "responsiveness": ["stress-ng", "hackbench", "cyclictest"],
}

INSTALL_COMMANDS = {
    "apt": "sudo apt-get install -y {pkg}",
    "pacman": "sudo pacman -S --noconfirm {pkg}",
}

VERSION_RE = re.compile(r"\d+(?:\.\d+)+")


def detect_package_manager() -> str | None:
    if shutil.which("apt-get"):
        return "apt"
    if shutil.which("pacman"):
        return "pacman"
    return None


def install_hint(name: str, manager: str | None = None) -> str:
    """Install command for a tool, for one package manager or all of them."""
    tool = TOOLS.get(name, Tool(name, name, name))
    if manager in INSTALL_COMMANDS:
        return INSTALL_COMMANDS[manager].format(pkg=getattr(tool, manager))
    return (f"{INSTALL_COMMANDS['apt'].format(pkg=tool.apt)} (Ubuntu) or "
            f"{INSTALL_COMMANDS['pacman'].format(pkg=tool.pacman)} (CachyOS)")


def missing_tools(names: list[str]) -> list[str]:
    return [n for n in names if shutil.which(n) is None]


def tool_version(name: str) -> str:
    tool = TOOLS.get(name)
    if tool is None or not tool.version_cmd:
        return "installed"
    _, out = run_cmd_capture(list(tool.version_cmd))
    m = VERSION_RE.search(out)
    return m.group(0) if m else "unknown"


def cmd_setup(args) -> int:
    """Report which benchmark tools are present and how to get the rest."""
    print_header("BENCHMARK SETUP CHECK")

    manager = detect_package_manager()
    if manager is None:
        log_error("Could not detect package manager")
        log_info("Supported distributions: Ubuntu (apt) and CachyOS (pacman)")
        return 1
    log_ok(f"Detected package manager: {manager}")

    print_header("VERIFICATION")
    missing = []
    for name in TOOLS:
        if shutil.which(name) is None:
            log_error(f"{name} is not available")
            missing.append(name)
        else:
            log_ok(f"{name} (version: {tool_version(name)})")

    print_header("SETUP SUMMARY")
    if missing:
        log_warn("Some tools are missing. Install them with:")
        for name in missing:
            print(f"  {paint(install_hint(name, manager), YELLOW)}")
        return 1

    log_ok("All required tools are installed and ready!")
    print()
    print(paint("You can now run the benchmarks:", BOLD))
    print(f"  {paint('borebench responsiveness', CYAN)} - Responsiveness benchmark")
    print(f"  {paint('borebench throughput', CYAN)}     - Throughput & fairness benchmark")
    return 0
