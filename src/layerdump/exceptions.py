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


"""Exceptions raised by layerdump."""


class LayerDumpError(Exception):
    """Base exception for all layerdump errors."""

    pass


class ParseError(LayerDumpError):
    """Raised when the manifest or config documents are malformed."""

    pass


class IndexOutOfRange(LayerDumpError, IndexError):
    """Raised when a layer reference resolves outside the available layers."""

    def __init__(self, reference: int, total: int):
        self.reference = reference
        self.total = total
        super().__init__(
            f"Invalid layer number {reference}, image has {total} layer(s) "
            f"(valid range {-total}..{total - 1})"
        )


class ArchiveError(LayerDumpError):
    """Raised when a layer archive cannot be read or holds a malformed entry."""

    pass


class WhiteoutTargetMissing(LayerDumpError):
    """Raised when a whiteout marker names a path absent from the composed tree."""

    def __init__(self, layer: str, path: str):
        self.layer = layer
        self.path = path
        super().__init__(
            f"Whiteout in layer {layer} references missing path: {path}"
        )


class PathError(LayerDumpError):
    """Raised when a path cannot be normalized or placed."""

    pass


class UnsafePathError(PathError):
    """Raised when an archive entry would be written outside the destination."""

    pass


class LayerIOError(LayerDumpError, OSError):
    """Raised when the destination tree cannot be created or written."""

    pass


class ImageExportError(LayerDumpError):
    """Raised when an image cannot be exported from the image store."""

    pass


class ImageNotFoundError(ImageExportError):
    """Raised when no local image matches the requested reference."""

    pass


class AmbiguousImageError(ImageExportError):
    """Raised when a reference matches more than one local image."""

    pass


class ConfigError(LayerDumpError):
    """Raised when the settings file or environment holds invalid values."""

    pass
