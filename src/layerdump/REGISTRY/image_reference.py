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
Image reference parsing.
Splits references like 'nginx:latest' or 'localhost:5000/team/app@sha256:...'
into their parts and derives file-system friendly names from them.
"""

import re
from typing import Optional
from dataclasses import dataclass

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference as given by the user.

    Examples:
        - nginx -> registry None, repository nginx, tag None
        - nginx:1.21 -> repository nginx, tag 1.21
        - localhost:5000/team/app:v1 -> registry localhost:5000, repository team/app
        - app@sha256:abc123 -> repository app, digest sha256:abc123
    """

    repository: str
    registry: Optional[str] = None
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Reference string; a bare image id is accepted too.

        Returns:
            Parsed ImageReference.

        Raises:
            ValueError: If the reference is empty or has no repository part.
        """
        reference = reference.strip() if reference else ""
        if not reference:
            raise ValueError("Empty image reference")

        name, _, digest = reference.partition("@")

        # A colon after the last slash separates the tag; one before it is a port.
        tag = None
        last_slash = name.rfind("/")
        last_colon = name.rfind(":")
        if last_colon > last_slash:
            name, tag = name[:last_colon], name[last_colon + 1:]
            if not tag:
                raise ValueError(f"Empty tag in image reference: {reference}")

        registry = None
        first, sep, rest = name.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, name = first, rest

        if not name:
            raise ValueError(f"No repository in image reference: {reference}")

        return cls(repository=name, registry=registry, tag=tag, digest=digest or None)

    @property
    def full_name(self) -> str:
        """The reference as it was written, normalized."""
        name = f"{self.registry}/{self.repository}" if self.registry else self.repository
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    @property
    def base_name(self) -> str:
        """
        Last repository component, safe to use as a file name.
        'ghcr.io/org/tool:1.0' -> 'tool'
        """
        last = self.repository.rsplit("/", 1)[-1]
        return _UNSAFE_NAME_CHARS.sub("_", last)

    def __str__(self) -> str:
        return self.full_name
