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
Unit tests for the registry module.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest
from docker.errors import APIError, NotFound

from layerdump.exceptions import AmbiguousImageError, ImageExportError, ImageNotFoundError
from layerdump.REGISTRY.image_cache import ImageCache
from layerdump.REGISTRY.image_exporter import ImageExporter
from layerdump.REGISTRY.image_reference import ImageReference


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        """Test parsing a simple image name."""
        ref = ImageReference.parse("nginx")
        assert ref.registry is None
        assert ref.repository == "nginx"
        assert ref.tag is None

    def test_parse_with_tag(self):
        """Test parsing image with tag."""
        ref = ImageReference.parse("nginx:1.21")
        assert ref.repository == "nginx"
        assert ref.tag == "1.21"

    def test_parse_user_image(self):
        """Test parsing user/image format."""
        ref = ImageReference.parse("myuser/myimage:v1")
        assert ref.registry is None
        assert ref.repository == "myuser/myimage"
        assert ref.tag == "v1"

    def test_parse_full_reference(self):
        """Test parsing full registry reference."""
        ref = ImageReference.parse("gcr.io/project/image:latest")
        assert ref.registry == "gcr.io"
        assert ref.repository == "project/image"
        assert ref.tag == "latest"

    def test_parse_registry_with_port(self):
        """Test that a port is not mistaken for a tag."""
        ref = ImageReference.parse("localhost:5000/team/app")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "team/app"
        assert ref.tag is None

    def test_parse_with_digest(self):
        """Test parsing image with digest."""
        ref = ImageReference.parse("nginx@sha256:abc123")
        assert ref.repository == "nginx"
        assert ref.digest == "sha256:abc123"
        assert ref.tag is None

    def test_full_name_round_trip(self):
        """Test that full_name reproduces the reference."""
        assert str(ImageReference.parse("ghcr.io/org/tool:1.0")) == "ghcr.io/org/tool:1.0"

    @pytest.mark.parametrize("reference, expected", [
        ("ghcr.io/org/tool:1.0", "tool"),
        ("alpine", "alpine"),
        ("sha256:4f1c2d", "sha256"),
        ("weird+name", "weird_name"),
    ])
    def test_base_name(self, reference, expected):
        """Test file name derivation."""
        assert ImageReference.parse(reference).base_name == expected

    @pytest.mark.parametrize("reference", ["", "   ", "nginx:", "gcr.io/"])
    def test_parse_invalid(self, reference):
        """Test rejection of unusable references."""
        with pytest.raises(ValueError):
            ImageReference.parse(reference)


class TestImageCache:
    """Tests for the image archive cache."""

    def _store(self, cache, image_id, data=b"archive"):
        cache.archive_path(image_id).write_bytes(data)
        return cache.add_archive(image_id, "demo:latest")

    def test_miss_then_hit(self, tmp_path):
        cache = ImageCache(str(tmp_path / "cache"))
        assert cache.get_archive("sha256:abc") is None

        entry = self._store(cache, "sha256:abc")

        assert cache.get_archive("sha256:abc") == cache.archive_path("sha256:abc")
        assert entry.size == len(b"archive")
        assert cache.archive_path("sha256:abc").name == "sha256_abc.tar"

    def test_index_is_persisted(self, tmp_path):
        self._store(ImageCache(str(tmp_path)), "sha256:abc")

        images = ImageCache(str(tmp_path)).list_images()

        assert [image.image_id for image in images] == ["sha256:abc"]
        assert images[0].reference == "demo:latest"

    def test_list_drops_missing_archives(self, tmp_path):
        cache = ImageCache(str(tmp_path))
        self._store(cache, "sha256:abc")
        cache.archive_path("sha256:abc").unlink()

        assert cache.list_images() == []
        index = json.loads((tmp_path / "index.json").read_text())
        assert index["images"] == {}

    def test_remove(self, tmp_path):
        cache = ImageCache(str(tmp_path))
        self._store(cache, "sha256:abc")

        assert cache.remove("sha256:abc") is True
        assert cache.remove("sha256:abc") is False
        assert cache.get_archive("sha256:abc") is None

    def test_prune_everything(self, tmp_path):
        cache = ImageCache(str(tmp_path))
        self._store(cache, "sha256:a", b"12345")
        self._store(cache, "sha256:b", b"123")

        stats = cache.prune()

        assert stats == {"removed_images": 2, "freed_bytes": 8}
        assert cache.get_cache_size() == 0

    def test_prune_by_age(self, tmp_path):
        cache = ImageCache(str(tmp_path))
        self._store(cache, "sha256:new")
        self._store(cache, "sha256:old")
        old = datetime.now(timezone.utc) - timedelta(days=30)
        cache._index["images"]["sha256:old"]["exported_at"] = old.isoformat()

        stats = cache.prune(max_age_days=7)

        assert stats["removed_images"] == 1
        assert cache.get_archive("sha256:new") is not None
        assert cache.get_archive("sha256:old") is None

    def test_unreadable_index_starts_empty(self, tmp_path):
        (tmp_path / "index.json").write_text("{not json")
        assert ImageCache(str(tmp_path)).list_images() == []

    def test_format_size(self):
        assert ImageCache.format_size(512) == "512.0 B"
        assert ImageCache.format_size(2048) == "2.0 KB"
        assert ImageCache.format_size(5 * 1024 ** 3) == "5.0 GB"


class FakeImage:
    def __init__(self, image_id, chunks=(b"abc", b"def"), failures=0):
        self.id = image_id
        self.chunks = chunks
        self.failures = failures
        self.saves = 0

    def save(self, named=False):
        self.saves += 1
        if self.saves <= self.failures:
            raise APIError("connection reset by daemon")
        return iter(self.chunks)


class FakeImages:
    def __init__(self, listed=(), by_id=None):
        self.listed = list(listed)
        self.by_id = by_id or {}
        self.get_calls = 0

    def list(self, filters=None):
        return list(self.listed)

    def get(self, reference):
        self.get_calls += 1
        if reference not in self.by_id:
            raise NotFound(f"No such image: {reference}")
        return self.by_id[reference]


class FakeClient:
    def __init__(self, images):
        self.images = images


class TestImageExporter:
    """Tests for exporting images through a Docker client."""

    def test_find_by_reference(self):
        image = FakeImage("sha256:abc")
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[image])))
        assert exporter.find_image("demo:latest") is image

    def test_find_by_id(self):
        image = FakeImage("sha256:abc")
        exporter = ImageExporter(client=FakeClient(FakeImages(by_id={"abc": image})))
        assert exporter.find_image("abc") is image

    def test_not_found_is_not_retried(self):
        images = FakeImages()
        exporter = ImageExporter(client=FakeClient(images), retries=3)

        with pytest.raises(ImageNotFoundError, match="docker pull"):
            exporter.find_image("missing:latest")
        assert images.get_calls == 1

    def test_ambiguous_reference(self):
        images = FakeImages(listed=[FakeImage("sha256:a"), FakeImage("sha256:b")])
        exporter = ImageExporter(client=FakeClient(images))

        with pytest.raises(AmbiguousImageError):
            exporter.find_image("demo")

    def test_export_writes_chunks_in_order(self, tmp_path):
        image = FakeImage("sha256:abc")
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[image])))
        target = tmp_path / "out" / "demo.tar"

        assert exporter.export("demo", target) == "sha256:abc"
        assert target.read_bytes() == b"abcdef"
        assert not target.with_name("demo.tar.partial").exists()

    def test_export_is_retried(self, tmp_path):
        image = FakeImage("sha256:abc", failures=1)
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[image])), retries=2)

        exporter.export("demo", tmp_path / "demo.tar")

        assert image.saves == 2
        assert (tmp_path / "demo.tar").read_bytes() == b"abcdef"

    def test_export_gives_up(self, tmp_path):
        image = FakeImage("sha256:abc", failures=5)
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[image])), retries=1)

        with pytest.raises(ImageExportError):
            exporter.export("demo", tmp_path / "demo.tar")
        assert list(tmp_path.iterdir()) == []

    def test_acquire_uses_cache(self, tmp_path):
        image = FakeImage("sha256:abc")
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[image])))
        cache = ImageCache(str(tmp_path / "cache"))

        first = exporter.acquire("demo:latest", cache=cache)
        second = exporter.acquire("demo:latest", cache=cache)

        assert first == second == cache.archive_path("sha256:abc")
        assert image.saves == 1
        assert cache.list_images()[0].reference == "demo:latest"

    def test_acquire_without_cache(self, tmp_path):
        image = FakeImage("sha256:abc")
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[image])))

        path = exporter.acquire("ghcr.io/org/tool:1.0", scratch_dir=tmp_path)

        assert path == tmp_path / "tool.tar"
        assert path.read_bytes() == b"abcdef"

    def test_acquire_needs_a_destination(self):
        exporter = ImageExporter(client=FakeClient(FakeImages(listed=[FakeImage("sha256:abc")])))
        with pytest.raises(ValueError):
            exporter.acquire("demo")
