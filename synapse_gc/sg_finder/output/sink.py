"""
Output sink for unreferenced state group ids.

Renders the id list in one of two formats:
- lines: one decimal id per line (the format operators feed to deletion
  scripts)
- csv: all ids on one line, comma separated

Invariants:
    - A file target is written to a temporary file in the same directory,
      fsynced, then renamed over the target; readers see either the old
      file or the complete new one
    - On failure the temporary file is removed and OutputError is raised
    - Standard output receives the complete text in one write

How to change safely:
    - Keep the temporary file in the target directory; os.replace() is only
      atomic within one filesystem
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Literal, TextIO

from ..errors import OutputError

logger = logging.getLogger(__name__)

OutputFormat = Literal["lines", "csv"]
FORMATS: tuple[str, ...] = ("lines", "csv")


def render_ids(ids: Iterable[int], fmt: OutputFormat = "lines") -> str:
    """Render ids as text in the given format.

    Raises:
        ValueError: If ``fmt`` is not a known format
    """
    if fmt == "lines":
        return "".join(f"{group_id}\n" for group_id in ids)
    if fmt == "csv":
        text = ",".join(str(group_id) for group_id in ids)
        return f"{text}\n" if text else ""
    raise ValueError(f"Unknown output format '{fmt}'. Must be one of: {', '.join(FORMATS)}")


def write_ids(
    ids: Iterable[int],
    path: str | Path | None = None,
    fmt: OutputFormat = "lines",
    stream: TextIO | None = None,
) -> int:
    """Write ids to ``path``, or to ``stream`` (stdout) when no path is given.

    Args:
        ids: State group ids, in output order
        path: Target file; replaced atomically
        fmt: Output format
        stream: Stream used when ``path`` is None

    Returns:
        Number of ids written

    Raises:
        OutputError: If the target cannot be written
    """
    ids = list(ids)
    text = render_ids(ids, fmt)

    if path is None:
        out = stream or sys.stdout
        try:
            out.write(text)
            out.flush()
        except OSError as e:
            raise OutputError(f"Failed to write to standard output: {e}") from e
        return len(ids)

    target = Path(path)
    _write_atomic(target, text)
    logger.info(
        f"Wrote {len(ids)} state group ids to {target}",
        extra={"path": str(target), "format": fmt, "count": len(ids)},
    )
    return len(ids)


def write_text_atomic(path: str | Path, text: str) -> None:
    """Atomically replace ``path`` with ``text``.

    Raises:
        OutputError: If the file cannot be written
    """
    _write_atomic(Path(path), text)


def _write_atomic(target: Path, text: str) -> None:
    directory = target.parent
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=directory,
            prefix=f".{target.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(text)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, target)
    except OSError as e:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise OutputError(f"Failed to write {target}: {e}", path=str(target)) from e
