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
Local cache of exported image archives.
One archive per image id; the presence of the archive file is a cache hit.
"""

import json
import logging
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, asdict
from pathlib import Path
from datetime import datetime, timezone, timedelta

from ..CONFIG.settings import default_cache_dir

logger = logging.getLogger(__name__)


@dataclass
class CachedImage:
    """Information about a cached image archive."""
    image_id: str
    reference: str
    archive_path: str
    size: int
    exported_at: str


class ImageCache:
    """
    Stores exported image archives keyed by image id.

    Archive contents are never re-validated: the same id always maps to the
    same archive until it is removed.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        """
        Initialize the image cache.

        Args:
            cache_dir: Directory for cache storage. Defaults to ~/.layerdump/cache
        """
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.images_dir = self.cache_dir / "images"
        self.index_file = self.cache_dir / "index.json"

        self.images_dir.mkdir(parents=True, exist_ok=True)
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the cache index from disk."""
        if self.index_file.exists():
            try:
                with open(self.index_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("ignoring unreadable cache index %s: %s", self.index_file, e)
        return {"images": {}}

    def _save_index(self) -> None:
        """Save the cache index to disk."""
        with open(self.index_file, 'w') as f:
            json.dump(self._index, f, indent=2)

    def archive_path(self, image_id: str) -> Path:
        """
        Location of the archive for an image id, whether cached or not.
        """
        return self.images_dir / f"{image_id.replace(':', '_')}.tar"

    def get_archive(self, image_id: str) -> Optional[Path]:
        """
        Get the cached archive of an image.

        Args:
            image_id: Image id, e.g. 'sha256:4f1c...'

        Returns:
            Path to the archive if cached, None otherwise
        """
        path = self.archive_path(image_id)
        if path.is_file():
            logger.info("using cached archive %s", path)
            return path
        return None

    def add_archive(self, image_id: str, reference: str) -> CachedImage:
        """
        Record an archive that was written to :meth:`archive_path`.

        Args:
            image_id: Image id
            reference: Reference the image was exported under

        Returns:
            CachedImage entry
        """
        path = self.archive_path(image_id)
        entry = CachedImage(
            image_id=image_id,
            reference=reference,
            archive_path=str(path),
            size=path.stat().st_size,
            exported_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        self._index["images"][image_id] = asdict(entry)
        self._save_index()
        return entry

    def remove(self, image_id: str) -> bool:
        """
        Remove an image archive from the cache.

        Returns:
            True if removed, False if not found
        """
        path = self.archive_path(image_id)
        found = image_id in self._index["images"] or path.exists()
        if path.exists():
            path.unlink()
        if self._index["images"].pop(image_id, None) is not None:
            self._save_index()
        return found

    def list_images(self) -> List[CachedImage]:
        """
        List all cached images. Index entries whose archive disappeared are dropped.
        """
        images = []
        for image_id, info in list(self._index["images"].items()):
            if Path(info["archive_path"]).is_file():
                images.append(CachedImage(**info))
            else:
                del self._index["images"][image_id]

        self._save_index()
        return images

    def prune(self, max_age_days: Optional[int] = None) -> Dict[str, int]:
        """
        Remove cached archives.

        Args:
            max_age_days: Only remove archives exported more than this many
                days ago. None removes everything.

        Returns:
            Statistics about removed items
        """
        removed_images = 0
        freed_bytes = 0
        cutoff = None
        if max_age_days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)

        for image in self.list_images():
            if cutoff is not None:
                try:
                    exported = datetime.fromisoformat(image.exported_at.replace("Z", "+00:00"))
                except ValueError:
                    logger.warning("unparseable export time for %s: %s", image.image_id, image.exported_at)
                    continue
                if exported >= cutoff:
                    continue
            if self.remove(image.image_id):
                removed_images += 1
                freed_bytes += image.size

        return {
            "removed_images": removed_images,
            "freed_bytes": freed_bytes
        }

    def get_cache_size(self) -> int:
        """Get total size of cached archives in bytes."""
        return sum(item.stat().st_size for item in self.images_dir.glob("*.tar") if item.is_file())

    @staticmethod
    def format_size(size_bytes: float) -> str:
        """Format a size in bytes to human readable string."""
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if size_bytes < 1024:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024
        return f"{size_bytes:.1f} PB"
