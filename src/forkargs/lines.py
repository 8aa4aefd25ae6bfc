"""Line source: one job per input line."""

from __future__ import annotations

import asyncio
import os
import stat
from typing import IO, AsyncIterator, Iterator, TextIO


def _strip_terminator(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
    return line


def read_lines(stream: TextIO) -> Iterator[str]:
    """Yield each line of ``stream`` with its line terminator removed.

    Lines are read lazily, one at a time, so a slow producer upstream of a
    pipe only delays the job that is waiting for it.
    """
    for line in iter(stream.readline, ""):
        yield _strip_terminator(line)


def is_pipe(stream: IO) -> bool:
    """True if ``stream`` is a pipe, socket or terminal rather than a regular file."""
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except OSError:
        return False
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or stat.S_ISCHR(mode)


async def read_lines_async(pipe: IO[bytes]) -> AsyncIterator[str]:
    """Yield lines from a pipe without blocking the event loop.

    Bytes are decoded like command-line arguments (``os.fsdecode``), so lines
    that are not valid in the locale encoding reach the child unchanged.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), pipe
    )
    try:
        while True:
            line = await _read_until_newline(reader)
            if not line:
                return
            yield _strip_terminator(os.fsdecode(line))
    finally:
        # The descriptor may be shared with the parent shell
        if not pipe.closed:
            os.set_blocking(pipe.fileno(), True)
        transport.close()


async def _read_until_newline(reader: asyncio.StreamReader) -> bytes:
    chunks = []
    while True:
        try:
            chunks.append(await reader.readuntil(b"\n"))
        except asyncio.IncompleteReadError as e:
            # EOF; a last line without a terminator still counts
            chunks.append(e.partial)
        except asyncio.LimitOverrunError as e:
            # Longer than the reader's buffer limit; keep what is there and go on
            chunks.append(await reader.readexactly(e.consumed))
            continue
        return b"".join(chunks)
