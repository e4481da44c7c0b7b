"""Prometheus textfile export of a finished benchmark run."""

from pathlib import Path

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from borebench_common import BenchConfig


def build_registry(cfg: BenchConfig, results) -> CollectorRegistry:
    registry = CollectorRegistry()

    info = Gauge("borebench_info", "Benchmark run metadata",
                 ["category", "scheduler", "detected_by", "kernel", "hostname"],
                 registry=registry)
    info.labels(cfg.category, cfg.scheduler, cfg.detected_by,
                cfg.kernel_version, cfg.hostname).set(1)

    Gauge("borebench_runs", "Configured repetitions per scenario",
          registry=registry).set(cfg.runs)
    Gauge("borebench_cpus", "Online CPUs during the run",
          registry=registry).set(cfg.num_cpus)

    labels = ["category", "scheduler", "test", "title"]
    value = Gauge("borebench_scenario_value",
                  "Aggregated scenario metric (mean over successful runs)",
                  labels + ["metric"], registry=registry)
    runs_ok = Gauge("borebench_scenario_runs_ok",
                    "Successful repetitions", labels, registry=registry)
    failed = Gauge("borebench_scenario_failed",
                   "1 if the scenario produced no result", labels,
                   registry=registry)

    for result in results:
        sc = result.scenario
        scenario_labels = (cfg.category, cfg.scheduler, str(sc.number), sc.title)
        for metric, v in result.values.items():
            value.labels(*scenario_labels, metric).set(v)
        runs_ok.labels(*scenario_labels).set(result.runs_ok)
        failed.labels(*scenario_labels).set(1 if result.failed else 0)

    return registry


def write_prometheus(cfg: BenchConfig, results) -> Path:
    """Write <category>_<LABEL>_<timestamp>.prom next to the report."""
    path = cfg.prom_file
    path.parent.mkdir(parents=True, exist_ok=True)
    write_to_textfile(str(path), build_registry(cfg, results))
    return path
