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
Parsers for the manifest.json and config documents of an unpacked image.
"""
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Union

from pydantic import ValidationError

from ..exceptions import ParseError
from ..MODELS.image_manifest import ImageConfig, Manifest

MANIFEST_FILE = "manifest.json"


@dataclass
class UnpackedImage:
    """
    An image archive exploded on disk, with its parsed documents.
    """
    root: Path
    manifest: Manifest
    config: ImageConfig

    @property
    def layer_count(self) -> int:
        return len(self.manifest.layers)

    def layer_paths(self) -> List[Path]:
        """
        Absolute paths of the layer archives, base layer first.
        """
        return [self.root / layer for layer in self.manifest.layers]

    def layer_history(self) -> Dict[int, str]:
        """
        Maps each layer position to the build command that created it.
        """
        history = self.config.clean_history()
        return {i: history[i].created_by for i in range(self.layer_count)}


class ManifestParser:
    """
    Reads and validates the documents of an unpacked image root.
    """

    def parse(self, root: Union[str, os.PathLike]) -> UnpackedImage:
        """
        Parses ``manifest.json`` and the config it points to.

        :param root: Directory the image archive was unpacked into.
        :return: The parsed image.
        :raises ParseError: If a document is missing or malformed, the
            manifest does not hold exactly one image, or the history does
            not line up with the layers.
        """
        root = Path(root)
        manifest = self.parse_manifest(root / MANIFEST_FILE)
        config = self.parse_config(root / manifest.config)
        self.validate_history(manifest, config)
        return UnpackedImage(root=root, manifest=manifest, config=config)

    def parse_manifest(self, path: Path) -> Manifest:
        """
        Parses a manifest.json file holding exactly one manifest document.
        """
        data = self._load_json(path)
        if not isinstance(data, list):
            raise ParseError(f"{path} must contain a list of manifests")
        if len(data) != 1:
            raise ParseError(f"Unexpected number of manifests in {path}: {len(data)}")

        try:
            return Manifest.model_validate(data[0])
        except ValidationError as e:
            raise ParseError(f"Invalid manifest in {path}: {e}") from e

    def parse_config(self, path: Path) -> ImageConfig:
        """
        Parses an image config document.
        """
        data = self._load_json(path)
        try:
            return ImageConfig.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Invalid image config in {path}: {e}") from e

    @staticmethod
    def validate_history(manifest: Manifest, config: ImageConfig) -> None:
        """
        Checks that every layer has exactly one non-empty history entry.
        """
        history = config.clean_history()
        if len(history) != len(manifest.layers):
            raise ParseError(
                f"Image history lists {len(history)} layer-producing step(s) "
                f"but the manifest has {len(manifest.layers)} layer(s)"
            )

    @staticmethod
    def _load_json(path: Path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Cannot read {path}: {e}") from e
