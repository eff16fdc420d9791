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
High level layer operations on an unpacked image: listing, inspecting,
dumping layer ranges and extracting single paths.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Sequence, Union

from ..LAYERS.compositor import LayerCompositor
from ..LAYERS.diff_reporter import inspect_layer
from ..LAYERS.index_resolver import resolve_layer_index, resolve_layer_range
from ..MODELS.image_manifest import LayerInfo
from ..PARSERS.manifest_parser import UnpackedImage
from ..UTILS.path_utils import ensure_within, normalize_in_image_path, place

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class LayerManager:
    """
    Runs layer operations for one unpacked image.
    """
    def __init__(self, image: UnpackedImage, scratch_dir: PathLike):
        """
        Initializes the layer manager.

        :param image: The parsed, unpacked image.
        :param scratch_dir: Directory for intermediate trees of extract operations.
        """
        self.image = image
        self.scratch_dir = Path(scratch_dir)
        self.compositor = LayerCompositor()

    def list_layers(self) -> Dict[int, str]:
        """
        Maps each layer position to the command that created it.
        """
        return self.image.layer_history()

    def inspect(self, reference: int) -> LayerInfo:
        """
        Reports the paths added and removed by one layer.

        :param reference: Layer number, negative values count from the top.
        """
        position = resolve_layer_index(self.image.layer_count, reference)
        return inspect_layer(self.image.layer_paths()[position])

    def dump(self, output: PathLike) -> Path:
        """
        Writes the complete image filesystem to ``output``.
        """
        return self._compose(self.image.layer_paths(), output)

    def dump_layer(self, reference: int, output: PathLike, stack: bool = False) -> Path:
        """
        Writes one layer, or with ``stack`` the base layers up to it, to ``output``.

        A single unstacked layer keeps its whiteout markers as files.
        """
        positions = resolve_layer_range(self.image.layer_count, reference, stack)
        return self._compose(self._select(positions), output)

    def extract(self, path: PathLike, output: PathLike) -> Path:
        """
        Copies one path out of the complete image filesystem.

        :param path: Path inside the image, e.g. ``/etc/os-release``.
        :param output: Target file, or directory to fill for directories.
        :raises UnsafePathError: If a symlink in the image leads the path out of the tree.
        """
        return self._extract(self.image.layer_paths(), path, output)

    def extract_from_layer(self, reference: int, path: PathLike, output: PathLike) -> Path:
        """
        Copies one path out of a single layer.
        """
        positions = resolve_layer_range(self.image.layer_count, reference)
        return self._extract(self._select(positions), path, output)

    def _select(self, positions: range) -> List[Path]:
        layers = self.image.layer_paths()
        return [layers[i] for i in positions]

    def _compose(self, layers: Sequence[Path], output: PathLike) -> Path:
        return self.compositor.compose(layers, output, apply_whiteouts=len(layers) > 1)

    def _extract(self, layers: Sequence[Path], path: PathLike, output: PathLike) -> Path:
        relative = normalize_in_image_path(path)
        tree = self._compose(layers, self.scratch_dir / "fs")
        source = ensure_within(tree, relative)

        output = Path(output)
        if source.is_dir() and not source.is_symlink():
            output.mkdir(parents=True, exist_ok=True)
        logger.info("moving %s to %s", source, output)
        place(source, output)
        return output
