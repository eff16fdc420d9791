# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Path normalization and placement helpers.
Keeps in-image paths and archive entry names inside their destination root.
"""

import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Union

from ..exceptions import PathError, UnsafePathError, LayerIOError

PathLike = Union[str, os.PathLike]


def normalize_in_image_path(path: PathLike) -> PurePosixPath:
    """
    Turn an in-image path into a path relative to the image root.

    A single leading root separator is stripped, so ``/etc/hosts`` and
    ``etc/hosts`` name the same file.

    Args:
        path: Path as seen from inside the image.

    Returns:
        Relative path that can be joined under a destination directory.

    Raises:
        PathError: If the path is empty, names the root itself or climbs
            above the root with ``..``.
    """
    raw = os.fspath(path)
    if raw.startswith("/"):
        raw = raw[1:]
    relative = PurePosixPath(raw)
    if relative.is_absolute():
        raise PathError(f"Cannot make in-image path relative: {path}")
    if ".." in relative.parts:
        raise PathError(f"In-image path must not contain '..': {path}")
    if str(relative) in ("", "."):
        raise PathError(f"In-image path does not name a file: {path!r}")
    return relative


def safe_member_path(name: str) -> PurePosixPath:
    """
    Normalize an archive entry name to a relative path.

    Leading slashes and ``.`` components are dropped. ``..`` components are
    resolved lexically and may not climb above the archive root.

    Raises:
        UnsafePathError: If the entry would land outside the root.
    """
    parts = []
    for part in PurePosixPath(name.lstrip("/")).parts:
        if part == "..":
            if not parts:
                raise UnsafePathError(f"Archive entry escapes destination: {name}")
            parts.pop()
        elif part != ".":
            parts.append(part)
    return PurePosixPath(*parts)


def ensure_within(root: PathLike, relative: PurePosixPath) -> Path:
    """
    Join ``relative`` under ``root`` and check that the parent directory,
    with symlinks resolved, is still inside ``root``.

    Returns:
        The joined path (not resolved).

    Raises:
        UnsafePathError: If a symlink in the tree redirects the path outside root.
    """
    target = Path(root, relative)
    real_root = os.path.realpath(root)
    real_parent = os.path.realpath(target.parent)
    if real_parent != real_root and not real_parent.startswith(real_root + os.sep):
        raise UnsafePathError(
            f"Path {relative} resolves outside {root} (via {real_parent})"
        )
    return target


def reset_directory(path: PathLike) -> Path:
    """
    Remove ``path`` if it exists and create it again, empty.
    """
    directory = Path(path)
    try:
        if directory.is_symlink() or directory.is_file():
            directory.unlink()
        elif directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)
    except OSError as e:
        raise LayerIOError(f"Cannot recreate output directory {directory}: {e}") from e
    return directory


def place(source: PathLike, destination: PathLike) -> None:
    """
    Move an extracted artifact to its final location.

    Files are moved to ``destination``. For directories the *contents* of
    ``source`` are merged into ``destination``, which must already exist.

    Args:
        source: File or directory to move.
        destination: Target file path, or existing target directory.

    Raises:
        PathError: If the source is missing or the destination directory
            has not been created.
    """
    source = Path(source)
    destination = Path(destination)

    if not source.exists() and not source.is_symlink():
        raise PathError(f"Path not found in image: {source}")

    is_directory = source.is_dir() and not source.is_symlink()
    if is_directory and not destination.is_dir():
        raise PathError(f"Destination directory does not exist: {destination}")

    try:
        if is_directory:
            for child in sorted(source.iterdir()):
                _merge_into(child, destination / child.name)
        else:
            shutil.move(str(source), str(destination))
    except OSError as e:
        raise LayerIOError(f"Cannot move {source} to {destination}: {e}") from e


def _merge_into(source: Path, target: Path) -> None:
    """Move ``source`` to ``target``, merging directories that already exist."""
    if source.is_dir() and not source.is_symlink() and target.is_dir():
        for child in sorted(source.iterdir()):
            _merge_into(child, target / child.name)
        source.rmdir()
        return
    if target.is_symlink() or target.is_file():
        target.unlink()
    shutil.move(str(source), str(target))
