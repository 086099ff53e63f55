from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

from .errors import WalkError


@dataclass(frozen=True, slots=True)
class SourceFile:
    path: Path
    relative_path: str  # always "/" separated


def iter_files(root: Union[str, os.PathLike]) -> Iterator[SourceFile]:
    """Yield every regular file under `root`, directories sorted so the
    traversal order is stable across runs.

    Errors are not swallowed: an unreadable directory raises WalkError
    mid-iteration, which is what aborts a sending session.
    """
    base = Path(root)
    if not base.is_dir():
        raise WalkError(f"not a directory: {base}")

    def on_error(exc: OSError) -> None:
        raise WalkError(f"cannot read {exc.filename}: {exc.strerror}") from exc

    for dirpath, dirnames, filenames in os.walk(base, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath, name)
            if not path.is_file():
                continue
            yield SourceFile(path=path, relative_path=path.relative_to(base).as_posix())
