from __future__ import annotations

from pathlib import Path

import pytest

from forkargs.config import RunConfig, load_config


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "forkargs.yaml"
    path.write_text(text)
    return path


def test_defaults() -> None:
    config = load_config(environ={})

    assert config == RunConfig()
    assert config.remote_shell_argv == ["ssh"]
    config.validate()


def test_yaml_file(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
slots: "4,2*worker1:/scratch"
keep_going: true
probe_transport: asyncssh
probe_timeout: 5
remote_shell: ssh -o BatchMode=yes
log_dir: ~/forkargs-logs
""",
    )

    config = load_config(path, environ={})

    assert config.slots == "4,2*worker1:/scratch"
    assert config.keep_going is True
    assert config.probe_transport == "asyncssh"
    assert config.probe_timeout == 5
    assert config.remote_shell_argv == ["ssh", "-o", "BatchMode=yes"]
    assert config.log_dir == Path("~/forkargs-logs").expanduser()
    assert config.source_path == path.resolve()


def test_integer_slots_become_spec(tmp_path: Path) -> None:
    config = load_config(write(tmp_path, "slots: 8\n"), environ={})

    assert config.slots == "8"


def test_empty_file_is_defaults(tmp_path: Path) -> None:
    config = load_config(write(tmp_path, ""), environ={})

    assert config.slots is None


def test_environment_overrides_file(tmp_path: Path) -> None:
    path = write(tmp_path, "slots: '2'\nremote_shell: rsh\n")

    config = load_config(path, environ={"FORKARGS_J": "3*worker1", "FORKARGS_RSH": "ssh -q"})

    assert config.slots == "3*worker1"
    assert config.remote_shell == "ssh -q"


def test_missing_file() -> None:
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/forkargs.yaml", environ={})


@pytest.mark.parametrize(
    "text",
    [
        "- just\n- a list\n",
        "colour: blue\n",
        "keep_going: maybe\n",
        "slots: true\n",
        "probe_timeout: soon\n",
    ],
)
def test_bad_file_is_rejected(tmp_path: Path, text: str) -> None:
    with pytest.raises(ValueError):
        load_config(write(tmp_path, text), environ={})


@pytest.mark.parametrize(
    "changes",
    [
        {"probe_transport": "telnet"},
        {"probe_timeout": 0},
        {"remote_shell": "  "},
        {"sync": True},
    ],
)
def test_validate_rejects(changes: dict) -> None:
    config = RunConfig(**changes)

    with pytest.raises(ValueError):
        config.validate()
