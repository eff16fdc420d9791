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
Read-only report of the paths a single layer adds and removes.
"""

import os
from typing import Union

from ..MODELS.image_manifest import LayerInfo
from .archive_reader import LayerArchiveReader, OpaqueMarker, RegularEntry, WhiteoutEntry


def inspect_layer(archive_path: Union[str, os.PathLike]) -> LayerInfo:
    """
    Lists the additions and deletions of a layer without applying it.

    Args:
        archive_path: Path to the layer archive.

    Returns:
        LayerInfo with archive paths in archive order. Deletions hold the
        whiteout targets, not the marker names; an opaque marker in ``var/``
        is reported as ``var/.wh..opq``.
    """
    info = LayerInfo()
    with LayerArchiveReader(archive_path) as reader:
        for entry in reader.entries():
            if isinstance(entry, (WhiteoutEntry, OpaqueMarker)):
                info.deletions.append(entry.target)
            elif isinstance(entry, RegularEntry):
                info.additions.append(entry.path)
    return info
