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
Streaming reader for layer archives.
Classifies every entry as regular content or a whiteout marker and
materializes single entries under a destination root.
"""

import logging
import os
import posixpath
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from ..exceptions import ArchiveError, LayerIOError
from ..UTILS.path_utils import ensure_within, reset_directory, safe_member_path

logger = logging.getLogger(__name__)

# https://github.com/moby/moby/blob/master/image/spec/v1.2.md#creating-an-image-filesystem-changeset
WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = WHITEOUT_PREFIX + WHITEOUT_PREFIX + ".opq"


@dataclass(frozen=True)
class RegularEntry:
    """An entry carrying real content: file, directory, link or device."""

    path: str
    name: str
    member: tarfile.TarInfo


@dataclass(frozen=True)
class WhiteoutEntry:
    """A deletion marker for ``target``, contributed by a lower layer."""

    path: str
    name: str
    target: str
    member: tarfile.TarInfo


@dataclass(frozen=True)
class OpaqueMarker:
    """
    An opaque directory marker (``.wh..wh..opq``).

    ``target`` is derived like a whiteout's, i.e. ``<dir>/.wh..opq``.
    """

    path: str
    name: str
    target: str
    member: tarfile.TarInfo


LayerEntry = Union[RegularEntry, WhiteoutEntry, OpaqueMarker]


def classify_member(member: tarfile.TarInfo) -> Optional[LayerEntry]:
    """
    Classify a tar member.

    Returns None for entries without an effective base name, such as
    the archive root ``./``. Directory paths keep the trailing slash they
    are stored with, which ``tarfile`` strips from ``member.name``.
    """
    path = member.name
    if member.isdir() and not path.endswith("/"):
        path += "/"
    name = posixpath.basename(path.rstrip("/"))
    if name in ("", ".", ".."):
        return None

    if name.startswith(WHITEOUT_PREFIX) and len(name) > len(WHITEOUT_PREFIX):
        target = posixpath.join(
            posixpath.dirname(path.rstrip("/")), name[len(WHITEOUT_PREFIX):]
        )
        if name == OPAQUE_WHITEOUT:
            return OpaqueMarker(path=path, name=name, target=target, member=member)
        return WhiteoutEntry(path=path, name=name, target=target, member=member)

    return RegularEntry(path=path, name=name, member=member)


class LayerArchiveReader:
    """
    Reads one layer archive entry by entry, in archive order.

    Usage:
        with LayerArchiveReader(path) as reader:
            for entry in reader.entries():
                ...
    """

    def __init__(self, archive_path: Union[str, os.PathLike]):
        """
        Args:
            archive_path: Path to the layer tar file (compression is detected).
        """
        self.archive_path = Path(archive_path)
        self._tar: Optional[tarfile.TarFile] = None

    def __enter__(self) -> "LayerArchiveReader":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def open(self) -> None:
        """Open the archive for reading."""
        try:
            self._tar = tarfile.open(self.archive_path, "r:*")
        except (tarfile.TarError, OSError) as e:
            raise ArchiveError(f"Cannot open layer archive {self.archive_path}: {e}") from e

    def close(self) -> None:
        """Close the archive."""
        if self._tar:
            self._tar.close()
            self._tar = None

    def entries(self) -> Iterator[LayerEntry]:
        """
        Yield the classified entries of the archive.

        The sequence is lazy and single pass. Entries keep archive order, so a
        later entry for the same path shadows an earlier one when extracted.

        Raises:
            ArchiveError: If the archive is truncated or holds a malformed header.
        """
        if self._tar is None:
            raise ArchiveError(f"Layer archive {self.archive_path} is not open")

        members = iter(self._tar)
        while True:
            try:
                member = next(members)
            except StopIteration:
                return
            except (tarfile.TarError, EOFError, OSError) as e:
                raise ArchiveError(f"Cannot read layer archive {self.archive_path}: {e}") from e

            entry = classify_member(member)
            if entry is None:
                logger.debug("skipping unnamed entry %r in %s", member.name, self.archive_path)
                continue
            yield entry

    def extract(self,
                entry: LayerEntry,
                destination: Union[str, os.PathLike],
                deferred_dirs: Optional[Dict[Path, tarfile.TarInfo]] = None) -> Optional[Path]:
        """
        Write one entry under ``destination`` exactly as the archive describes it.

        Whatever already exists at the entry's path is replaced, unless both the
        existing path and the entry are directories, in which case they merge.

        Args:
            entry: Entry previously yielded by :meth:`entries`.
            destination: Root directory of the tree being written.
            deferred_dirs: When given, directory attributes are not applied now;
                the directory is recorded here for :func:`apply_directory_attrs`.

        Returns:
            The written path, or None if the entry was skipped.

        Raises:
            UnsafePathError: If the entry would be written outside ``destination``.
            ArchiveError: If the entry data cannot be read.
            LayerIOError: If the destination cannot be written.
        """
        member = entry.member
        relative = safe_member_path(member.name)
        target = ensure_within(destination, relative)

        if (member.ischr() or member.isblk()) and not _is_root():
            logger.warning("skipping device node %s (requires root)", entry.path)
            return None

        replacement = {"name": str(relative)}
        if member.islnk():
            replacement["linkname"] = str(safe_member_path(member.linkname))
        member = member.replace(**replacement, deep=False)

        defer = deferred_dirs is not None and member.isdir()
        try:
            _clear_target(target, member)
            self._tar.extract(member, path=destination, set_attrs=not defer,
                              filter="fully_trusted")
        except (tarfile.TarError, EOFError) as e:
            raise ArchiveError(
                f"Cannot extract {entry.path} from {self.archive_path}: {e}"
            ) from e
        except OSError as e:
            raise LayerIOError(
                f"Cannot write {entry.path} from {self.archive_path}: {e}"
            ) from e

        if defer:
            deferred_dirs[target] = member
        return target


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _clear_target(target: Path, member: tarfile.TarInfo) -> None:
    """Remove an existing path that the entry replaces rather than merges with."""
    if not os.path.lexists(target):
        return
    if member.isdir() and target.is_dir() and not target.is_symlink():
        return
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


def apply_directory_attrs(deferred_dirs: Dict[Path, tarfile.TarInfo]) -> None:
    """
    Apply mode, ownership and mtime to directories whose attributes were deferred.

    Deepest directories go first so that restricting a parent does not block
    its children. Directories removed in the meantime are skipped.
    """
    for path in sorted(deferred_dirs, key=lambda p: len(p.parts), reverse=True):
        if not path.is_dir() or path.is_symlink():
            continue
        member = deferred_dirs[path]
        try:
            if _is_root():
                os.chown(path, member.uid, member.gid)
            os.chmod(path, member.mode)
            os.utime(path, (member.mtime, member.mtime))
        except OSError as e:
            raise LayerIOError(f"Cannot set attributes of {path}: {e}") from e


def unpack_archive(archive_path: Union[str, os.PathLike],
                   destination: Union[str, os.PathLike]) -> Path:
    """
    Unpack a whole archive into a freshly reset ``destination``.

    Whiteout markers are written verbatim; this is meant for the exported
    image archive, not for composing layers.
    """
    destination = reset_directory(destination)
    logger.info("unpacking archive %s", archive_path)

    deferred: Dict[Path, tarfile.TarInfo] = {}
    with LayerArchiveReader(archive_path) as reader:
        for entry in reader.entries():
            reader.extract(entry, destination, deferred)
    apply_directory_attrs(deferred)
    return destination
