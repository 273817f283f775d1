"""Collision-free artifact names.

``report.txt`` becomes ``report(1).txt``, ``report(2).txt``, ... when the
plain name is taken. The file is created with ``O_EXCL`` semantics (mode
``"xb"``) so the existence check and the creation are a single step; two
concurrent resolutions of the same name never hand out the same path.
"""
from __future__ import annotations

import itertools
from pathlib import Path
from typing import BinaryIO, Iterator, Tuple


def split_name(name: str) -> Tuple[str, str]:
    # extension is everything from the last dot, including a leading one
    dot = name.rfind(".")
    if dot == -1:
        return name, ""
    return name[:dot], name[dot:]


def candidate_names(name: str) -> Iterator[str]:
    yield name
    stem, ext = split_name(name)
    for n in itertools.count(1):
        yield f"{stem}({n}){ext}"


def create_unique_artifact(directory: Path, name: str) -> Tuple[Path, BinaryIO]:
    """Create and open a new file for ``name`` in ``directory``.

    Returns the chosen path and the handle opened for binary writing.
    """
    candidates = candidate_names(name)
    while True:
        path = directory / next(candidates)
        try:
            return path, open(path, "xb")
        except FileExistsError:
            continue
