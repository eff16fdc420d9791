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
Exports locally available images from the Docker daemon into archive files.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

import docker
from docker.errors import DockerException, NotFound
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import AmbiguousImageError, ImageExportError, ImageNotFoundError
from .image_cache import ImageCache
from .image_reference import ImageReference

logger = logging.getLogger(__name__)


class ImageExporter:
    """
    Client for the local Docker daemon.

    Daemon calls are retried on connection and API errors; a missing image
    is never retried.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None,
                 timeout: int = 120, retries: int = 3):
        """
        Initialize the exporter.

        Args:
            client: Docker client to use. Created from the environment when omitted.
            timeout: Daemon request timeout in seconds.
            retries: Attempts per daemon call.
        """
        self._client = client
        self.timeout = timeout
        self.retries = retries

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            logger.info("connecting to docker daemon")
            try:
                self._client = docker.from_env(timeout=self.timeout)
            except DockerException as e:
                raise ImageExportError(f"Cannot connect to the Docker daemon: {e}") from e
        return self._client

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_exponential(multiplier=0.5, max=10),
            retry=(retry_if_exception_type((DockerException, OSError))
                   & retry_if_not_exception_type(NotFound)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def find_image(self, reference: str):
        """
        Look up the single local image matching a reference.

        Args:
            reference: Image reference or id

        Returns:
            docker.models.images.Image

        Raises:
            ImageNotFoundError: If no local image matches
            AmbiguousImageError: If more than one image matches
        """
        logger.info("checking image ref %s", reference)

        try:
            images = self._retrying()(self.client.images.list, filters={"reference": reference})
            if not images:
                # Bare ids do not match the reference filter.
                images = [self._retrying()(self.client.images.get, reference)]
        except NotFound as e:
            raise ImageNotFoundError(
                f"Image {reference} was not found locally, run docker pull first"
            ) from e
        except DockerException as e:
            raise ImageExportError(f"Failed to look up image {reference}: {e}") from e

        if len(images) > 1:
            raise AmbiguousImageError(
                f"Reference {reference} matches {len(images)} images, it should match exactly one"
            )
        return images[0]

    def export(self, reference: str, archive_path: Union[str, os.PathLike]) -> str:
        """
        Save an image to an archive file.

        Chunks are written in stream order into a temporary file that is
        renamed into place once complete, so a partial export never looks
        like a finished archive.

        Args:
            reference: Image reference or id
            archive_path: Destination archive

        Returns:
            The exported image id
        """
        image = self.find_image(reference)
        self._write(image, Path(archive_path), reference)
        return image.id

    def acquire(self, reference: str, cache: Optional[ImageCache] = None,
                scratch_dir: Optional[Union[str, os.PathLike]] = None) -> Path:
        """
        Get an archive of the image, reusing a cached export when present.

        Args:
            reference: Image reference or id
            cache: Image cache; when omitted the archive goes to scratch_dir
            scratch_dir: Directory for uncached exports

        Returns:
            Path to the image archive
        """
        image = self.find_image(reference)

        if cache is not None:
            cached = cache.get_archive(image.id)
            if cached:
                return cached
            archive_path = cache.archive_path(image.id)
        else:
            if scratch_dir is None:
                raise ValueError("scratch_dir is required when no cache is used")
            name = ImageReference.parse(reference).base_name
            archive_path = Path(scratch_dir) / f"{name}.tar"

        self._write(image, archive_path, reference)

        if cache is not None:
            cache.add_archive(image.id, reference)
        return archive_path

    def _write(self, image, archive_path: Path, reference: str) -> None:
        try:
            self._retrying()(self._save, image, archive_path)
        except (DockerException, OSError) as e:
            raise ImageExportError(f"Failed to export image {reference}: {e}") from e

    def _save(self, image, archive_path: Path) -> None:
        logger.info("exporting image %s to %s", image.id, archive_path)
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        partial = archive_path.with_name(archive_path.name + ".partial")
        try:
            with open(partial, 'wb') as f:
                for chunk in image.save(named=True):
                    f.write(chunk)
            os.replace(partial, archive_path)
        finally:
            if partial.exists():
                partial.unlink()
