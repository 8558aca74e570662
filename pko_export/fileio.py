"""Output files that either appear complete or not at all."""

from __future__ import annotations

import contextlib
import os
import tempfile
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import IO, Iterator


@contextmanager
def atomic_output(path: Path, binary: bool = False) -> Iterator[IO]:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".part", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        if binary:
            handle = os.fdopen(fd, "wb")
        else:
            handle = os.fdopen(fd, "w", encoding="utf-8", newline="\n")
        with handle:
            yield handle
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            tmp_path.unlink()
        raise


@contextmanager
def atomic_outputs(*paths: Path, binary: bool = False) -> Iterator[list[IO]]:
    # An exception inside the block discards every temp file; none are committed.
    with ExitStack() as stack:
        yield [stack.enter_context(atomic_output(p, binary=binary)) for p in paths]


def write_text_atomic(path: Path, text: str) -> Path:
    with atomic_output(path) as f:
        f.write(text)
    return path
