"""Tests for the dependency check."""

import pytest

import borebench_setup
from borebench_setup import (
    cmd_setup, detect_package_manager, install_hint, missing_tools,
)


def fake_which(present):
    return lambda name: f"/usr/bin/{name}" if name in present else None


@pytest.mark.parametrize("present,expected", [
    ({"apt-get"}, "apt"),
    ({"pacman"}, "pacman"),
    ({"apt-get", "pacman"}, "apt"),
    (set(), None),
])
def test_detect_package_manager(monkeypatch, present, expected):
    monkeypatch.setattr(borebench_setup.shutil, "which", fake_which(present))
    assert detect_package_manager() == expected


def test_install_hints():
    assert install_hint("hackbench", "apt") == "sudo apt-get install -y rt-tests"
    assert install_hint("python3", "pacman") == "sudo pacman -S --noconfirm python"
    both = install_hint("sysbench")
    assert "apt-get install -y sysbench" in both
    assert "pacman -S --noconfirm sysbench" in both


def test_missing_tools(monkeypatch):
    monkeypatch.setattr(borebench_setup.shutil, "which", fake_which({"stress-ng"}))
    assert missing_tools(["stress-ng", "hackbench"]) == ["hackbench"]


def test_cmd_setup_without_package_manager(monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setattr(borebench_setup.shutil, "which", fake_which(set()))
    assert cmd_setup(None) == 1
    assert "Could not detect package manager" in capsys.readouterr().out


def test_cmd_setup_reports_missing(monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setattr(borebench_setup.shutil, "which",
                        fake_which({"pacman", "stress-ng", "sysbench", "python3"}))
    monkeypatch.setattr(borebench_setup, "run_cmd_capture",
                        lambda cmd: (0, "stress-ng, version 0.17.06"))
    assert cmd_setup(None) == 1
    out = capsys.readouterr().out
    assert "stress-ng (version: 0.17.06)" in out
    assert "hackbench is not available" in out
    assert "sudo pacman -S --noconfirm rt-tests" in out


def test_cmd_setup_all_present(monkeypatch, capsys):
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setattr(borebench_setup.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(borebench_setup, "run_cmd_capture",
                        lambda cmd: (0, "sysbench 1.0.20"))
    assert cmd_setup(None) == 0
    assert "All required tools are installed" in capsys.readouterr().out
