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
Layer composition.
Applies an ordered range of layer archives onto an output directory,
honoring whiteout markers.
"""

import logging
import os
import shutil
import tarfile
from pathlib import Path
from typing import Dict, Sequence, Union

from ..exceptions import WhiteoutTargetMissing
from ..UTILS.path_utils import ensure_within, reset_directory, safe_member_path
from .archive_reader import (
    LayerArchiveReader,
    OpaqueMarker,
    WhiteoutEntry,
    apply_directory_attrs,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class LayerCompositor:
    """
    Builds a filesystem snapshot out of layer archives.

    The output directory is always recreated from scratch; composing is never
    a merge into an existing tree. Nothing is rolled back on failure.
    """

    def compose(self,
                layers: Sequence[PathLike],
                destination: PathLike,
                *,
                apply_whiteouts: bool) -> Path:
        """
        Apply ``layers`` in order, oldest first, onto ``destination``.

        Args:
            layers: Paths to the layer archives to apply.
            destination: Output directory. Removed and recreated if it exists.
            apply_whiteouts: Interpret whiteout markers as deletions. When False
                the markers are written out like regular files, which is what
                a single unstacked layer needs.

        Returns:
            The destination directory.

        Raises:
            WhiteoutTargetMissing: If a whiteout names a path absent from the tree.
            ArchiveError: If a layer archive is unreadable.
            UnsafePathError: If an entry would land outside the destination.
            LayerIOError: If the destination cannot be written.
        """
        destination = reset_directory(destination)
        deferred: Dict[Path, tarfile.TarInfo] = {}

        for layer in layers:
            logger.info("unpacking layer %s", layer)
            with LayerArchiveReader(layer) as reader:
                for entry in reader.entries():
                    if apply_whiteouts and isinstance(entry, WhiteoutEntry):
                        self._remove(destination, entry, layer)
                        continue
                    if apply_whiteouts and isinstance(entry, OpaqueMarker):
                        logger.warning("ignoring opaque whiteout %s in layer %s", entry.path, layer)
                        continue
                    reader.extract(entry, destination, deferred)

        apply_directory_attrs(deferred)
        return destination

    def _remove(self, destination: Path, entry: WhiteoutEntry, layer: PathLike) -> None:
        """Delete the whiteout target, as a directory first and then as a file."""
        target = ensure_within(destination, safe_member_path(entry.target))
        logger.debug("whiteout %s removes %s", entry.path, entry.target)
        try:
            shutil.rmtree(target)
        except OSError:
            try:
                os.remove(target)
            except OSError as e:
                raise WhiteoutTargetMissing(os.fspath(layer), entry.target) from e
