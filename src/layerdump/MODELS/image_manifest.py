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
Models representing an exported container image: manifest, config and layer reports.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Manifest(BaseModel):
    """
    A single entry of the image archive's manifest.json.
    Layer paths are relative to the unpacked archive root, oldest first.
    """
    model_config = ConfigDict(populate_by_name=True)

    config: str = Field(alias="Config")
    repo_tags: List[str] = Field(default=[], alias="RepoTags")
    layers: List[str] = Field(alias="Layers", min_length=1)

    @field_validator("repo_tags", mode="before")
    @classmethod
    def _untagged(cls, value):
        # docker save writes null for untagged images
        return value if value is not None else []


class HistoryEntry(BaseModel):
    """
    One build step from the image config history.
    """
    created: Optional[str] = None
    created_by: str = ""
    comment: str = ""
    empty_layer: bool = False


class ImageConfig(BaseModel):
    """
    The subset of the image config document used to describe layers.
    """
    architecture: str = ""
    os: str = ""
    history: List[HistoryEntry] = []

    def clean_history(self) -> List[HistoryEntry]:
        """
        Returns the history entries that produced a filesystem layer.
        """
        return [entry for entry in self.history if not entry.empty_layer]


class LayerInfo(BaseModel):
    """
    Paths added and removed by a single layer.
    """
    additions: List[str] = []
    deletions: List[str] = []
