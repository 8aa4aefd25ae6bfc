from __future__ import annotations

import shlex
import stat
from pathlib import Path

import pytest

FAKE_RSH = """#!/bin/sh
# Stand-in for ssh: fail for deadhost, otherwise join the arguments
# into one string and hand it to a shell, as ssh does on the far side.
host="$1"
shift
if [ "$host" = deadhost ]; then
    echo "ssh: connect to host deadhost: Connection refused" >&2
    exit 255
fi
echo "$host" >> "$(dirname "$0")/hosts.log"
exec sh -c "$*"
"""


@pytest.fixture
def fake_rsh(tmp_path: Path) -> Path:
    path = tmp_path / "fake-rsh"
    path.write_text(FAKE_RSH)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def record(tmp_path: Path):
    """Command that appends its argument to a file, and the file's path."""
    out = tmp_path / "record.log"
    return ["sh", "-c", f'echo "$1" >> {shlex.quote(str(out))}', "sh"], out
