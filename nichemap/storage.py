"""
File-based artifact helpers: atomic writes, bounded I/O retries and run ids.
"""

import json
import logging
import os
import secrets
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

import pandas as pd

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transient import/export failures are retried this many times in total
IO_RETRIES = 3
IO_RETRY_DELAY = 0.5


@contextmanager
def atomic_path(path: str | Path) -> Iterator[Path]:
    """
    Yield a temporary path next to `path`; on success rename it into place.

    The temporary file keeps the target's suffix so format drivers that look
    at the extension behave the same. Sidecar files written next to the
    temporary (e.g. `.prj`) are renamed along with it.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=path.suffix, dir=path.parent)
    os.close(fd)
    os.unlink(tmp_name)
    tmp = Path(tmp_name)
    try:
        yield tmp
        for sidecar in tmp.parent.glob(f"{tmp.stem}.*"):
            if sidecar != tmp:
                rest = sidecar.name[len(tmp.stem):]
                os.replace(sidecar, path.parent / f"{path.stem}{rest}")
        os.replace(tmp, path)
    finally:
        for leftover in tmp.parent.glob(f"{tmp.stem}*"):
            leftover.unlink()


def retry_io(
    func: Callable[..., T],
    *args,
    attempts: int = IO_RETRIES,
    delay: float = IO_RETRY_DELAY,
    item: Optional[str] = None,
    **kwargs,
) -> T:
    """
    Call `func`, retrying transient OSErrors a bounded number of times.

    Missing files are not transient and are raised immediately.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except FileNotFoundError:
            raise
        except OSError as e:
            if attempt == attempts:
                logger.error(f"I/O failed after {attempts} attempts ({item or func.__name__}): {e}")
                raise
            logger.warning(f"I/O error on {item or func.__name__} (attempt {attempt}/{attempts}): {e}")
            time.sleep(delay * attempt)
    raise AssertionError("unreachable")


def new_run_id(stage: str) -> str:
    """Unique, sortable id for one run of a stage."""
    stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    return f"{stage}_{stamp}_{secrets.token_hex(3)}"


def write_json(data: dict, path: str | Path) -> Path:
    path = Path(path)
    with atomic_path(path) as tmp:
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, default=str)
    return path


def read_json(path: str | Path) -> dict:
    with open(path) as f:
        return json.load(f)


def write_csv(df: pd.DataFrame, path: str | Path, index: bool = False) -> Path:
    path = Path(path)
    with atomic_path(path) as tmp:
        df.to_csv(tmp, index=index)
    return path
