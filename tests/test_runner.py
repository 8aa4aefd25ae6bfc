from __future__ import annotations

import io
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

from forkargs.runner import (
    EXIT_CONFIG_ERROR,
    EXIT_JOB_FAILED,
    EXIT_OK,
    EXIT_SCHEDULER_ERROR,
    main,
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FORKARGS_J", raising=False)
    monkeypatch.delenv("FORKARGS_RSH", raising=False)


@pytest.fixture
def jobs_file(tmp_path: Path) -> Path:
    path = tmp_path / "jobs.txt"
    path.write_text("a\nb\nc\n")
    return path


def test_runs_every_job(jobs_file: Path, record) -> None:
    command, out = record

    assert main(["-j", "3*localhost", "-f", str(jobs_file), *command]) == EXIT_OK

    assert sorted(out.read_text().split()) == ["a", "b", "c"]


def test_attached_slot_count(jobs_file: Path, record) -> None:
    command, out = record

    assert main(["-j2", "-f", str(jobs_file), *command]) == EXIT_OK


def test_command_flags_are_not_parsed(tmp_path: Path, jobs_file: Path) -> None:
    out = tmp_path / "out.txt"

    assert main(["-f", str(jobs_file), "-j1", "sh", "-c", f'echo "$0" "$1" >> {out}', "-v"]) == EXIT_OK

    assert out.read_text().splitlines() == ["-v a", "-v b", "-v c"]


def test_failing_job_exit_code(jobs_file: Path) -> None:
    assert main(["-j", "2", "-f", str(jobs_file), "false"]) == EXIT_JOB_FAILED


def test_stdin_is_default_input(monkeypatch: pytest.MonkeyPatch, record) -> None:
    command, out = record
    monkeypatch.setattr("sys.stdin", io.TextIOWrapper(io.BytesIO(b"x\ny\n")))

    assert main(["-j", "1", *command]) == EXIT_OK

    assert out.read_text().split() == ["x", "y"]


def test_environment_supplies_slots(monkeypatch: pytest.MonkeyPatch, jobs_file: Path, tmp_path: Path) -> None:
    trace = tmp_path / "trace.txt"
    monkeypatch.setenv("FORKARGS_J", "2")

    assert main(["-t", str(trace), "-f", str(jobs_file), "true"]) == EXIT_OK

    snapshot = trace.read_text().split("forkargs:")[0]
    assert snapshot.count("localhost") == 2


@pytest.mark.parametrize(
    "argv",
    [
        ["-j", "0", "true"],
        ["-j", "bad!host", "true"],
        ["-j", "2"],
        ["--sync", "true"],
        ["--dashboard", "true"],
        ["--config", "/nonexistent/forkargs.yaml", "true"],
        ["-f", "/nonexistent/jobs.txt", "true"],
    ],
)
def test_configuration_errors(argv: list[str]) -> None:
    assert main(argv) == EXIT_CONFIG_ERROR


def test_all_hosts_unreachable(fake_rsh: Path, jobs_file: Path) -> None:
    argv = ["-j", "2*deadhost", "--rsh", str(fake_rsh), "-f", str(jobs_file), "true"]

    assert main(argv) == EXIT_SCHEDULER_ERROR


def test_unreachable_host_is_skipped(fake_rsh: Path, jobs_file: Path, record) -> None:
    command, out = record
    argv = ["-j", "deadhost,worker1", "--rsh", str(fake_rsh), "-f", str(jobs_file), *command]

    assert main(argv) == EXIT_OK

    assert sorted(out.read_text().split()) == ["a", "b", "c"]


def test_no_probe_trusts_every_host(fake_rsh: Path, jobs_file: Path) -> None:
    argv = ["-n", "-j", "deadhost", "--rsh", str(fake_rsh), "-f", str(jobs_file), "true"]

    # The jobs themselves now hit the dead host
    assert main(argv) == EXIT_JOB_FAILED


def test_spawn_failure(tmp_path: Path, jobs_file: Path) -> None:
    argv = ["-j", "1", "-f", str(jobs_file), str(tmp_path / "no-such-command")]

    assert main(argv) == EXIT_SCHEDULER_ERROR


def test_config_file_and_log_dir(tmp_path: Path, jobs_file: Path) -> None:
    config = tmp_path / "forkargs.yaml"
    config.write_text(f"slots: '1'\nlog_dir: {tmp_path / 'logs'}\n")

    assert main(["--config", str(config), "-f", str(jobs_file), "echo", "job"]) == EXIT_OK

    (run_dir,) = (tmp_path / "logs").iterdir()
    assert (run_dir / "config.yaml").read_text() == config.read_text()
    assert (run_dir / "slot-0.log").read_text().splitlines() == [
        "$ echo job a", "job a", "$ echo job b", "job b", "$ echo job c", "job c",
    ]


def test_undecodable_input_bytes_reach_the_job(tmp_path: Path, record) -> None:
    command, out = record
    jobs = tmp_path / "jobs.txt"
    jobs.write_bytes(b"ok\ncaf\xe9.tar\n")
    log_dir = tmp_path / "logs"

    assert main(["-j", "1", "--log-dir", str(log_dir), "-f", str(jobs), *command]) == EXIT_OK

    assert out.read_bytes().splitlines() == [b"ok", b"caf\xe9.tar"]
    (run_dir,) = log_dir.iterdir()
    assert b"caf\xe9.tar" in (run_dir / "slot-0.log").read_bytes()


SRC = Path(__file__).resolve().parents[1] / "src"


def _wait_until(condition, timeout: float = 10) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "timed out"
        time.sleep(0.05)


def test_interrupt_with_idle_stdin_pipe(record) -> None:
    command, out = record
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC), env.get("PYTHONPATH")]))
    proc = subprocess.Popen(
        [sys.executable, "-m", "forkargs.runner", "-j", "2", *command],
        stdin=subprocess.PIPE,
        env=env,
    )
    try:
        proc.stdin.write(b"a\n")
        proc.stdin.flush()
        _wait_until(lambda: out.exists() and out.read_text().split() == ["a"])

        # The producer is idle but has not closed the pipe
        proc.send_signal(signal.SIGINT)

        assert proc.wait(timeout=10) == EXIT_OK
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        proc.stdin.close()

    assert out.read_text().split() == ["a"]
