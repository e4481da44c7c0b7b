#!/usr/bin/env python3
"""
bore-bench: BORE vs EEVDF/CFS scheduler benchmark manager.

Usage:
    borebench responsiveness          Latency / interactivity benchmark
    borebench throughput              Throughput & fairness benchmark
    borebench compare throughput      Compare newest BORE and DEFAULT results
    borebench compare FILE1 FILE2     Compare two result files
    borebench detect                  Explain scheduler detection
    borebench setup                   Check benchmark tool dependencies

Set SCHEDULER_TYPE=BORE (or DEFAULT) to override scheduler detection.
"""

import argparse
import os
import signal
import sys

from borebench_common import (
    BOLD, BenchConfig, log_info, paint, print_header,
)


def _sigterm(signum, frame):
    # Raise SystemExit so context managers kill background load and
    # remove temp files on the way out.
    sys.exit(128 + signum)


def cmd_bench(args) -> int:
    from borebench_suites import run_suite

    cfg = BenchConfig.from_args(args.command, args)
    if not os.environ.get("SCHEDULER_TYPE") and not args.scheduler:
        log_info("Tip: set SCHEDULER_TYPE=BORE or DEFAULT to specify the scheduler explicitly")
    log_info(f"Scheduler: {cfg.scheduler} (detected via {cfg.detected_by})")
    return run_suite(cfg)


def cmd_detect(args) -> int:
    import platform
    import socket

    from borebench_detect import diagnose

    print_header("SCHEDULER DETECTION TEST")
    print(f"{paint('Kernel Version:', BOLD)} {platform.release()}")
    print(f"{paint('Hostname:', BOLD)} {socket.gethostname()}")
    print_header("DETECTION METHODS")
    print(diagnose())
    return 0


def positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="borebench",
        description="BORE vs DEFAULT scheduler benchmark manager",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("responsiveness", "Scheduling latency and interactivity benchmark"),
        ("throughput", "Throughput and fairness benchmark"),
    ):
        bench = sub.add_parser(name, help=help_text)
        bench.add_argument("--runs", type=positive_int, default=None,
                           help="Repetitions per scenario; 1 = single-pass "
                                "(default: 5 throughput, 1 responsiveness)")
        bench.add_argument("--output-dir", type=str, default=None,
                           help="Directory for result files (default: cwd)")
        bench.add_argument("--scheduler", type=str, default=None,
                           help="Override detection (BORE, DEFAULT, EEVDF, CFS)")
        bench.add_argument("--stress-method", type=str, default=None,
                           help="stress-ng --cpu-method for throughput test 1 "
                                "(default: stress-ng's own)")
        bench.add_argument("--no-drop-caches", action="store_true",
                           help="Skip dropping page caches between runs")
        bench.add_argument("--no-prometheus", action="store_true",
                           help="Do not write the .prom metrics file")

    compare = sub.add_parser("compare", help="Compare BORE and DEFAULT results")
    compare.add_argument("files", nargs="*",
                         help="responsiveness|throughput, or two result files")
    compare.add_argument("--dir", type=str, default=".",
                         help="Where to look for result files in keyword mode")
    compare.add_argument("--no-color", action="store_true",
                         help="Disable ANSI colors")

    sub.add_parser("detect", help="Explain which scheduler is detected and why")
    sub.add_parser("setup", help="Check that the benchmark tools are installed")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    signal.signal(signal.SIGTERM, _sigterm)

    if args.command in ("throughput", "responsiveness"):
        return cmd_bench(args)
    if args.command == "compare":
        from borebench_compare import cmd_compare
        if args.no_color:
            os.environ["NO_COLOR"] = "1"
        return cmd_compare(args)
    if args.command == "detect":
        return cmd_detect(args)
    if args.command == "setup":
        from borebench_setup import cmd_setup
        return cmd_setup(args)

    parser.print_help()
    return 1


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user.")
        sys.exit(130)


if __name__ == "__main__":
    run()
