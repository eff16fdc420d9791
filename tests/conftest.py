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
Shared fixtures building layer archives and exported image archives.

Layer contents are described as tuples:
    ("file", name, data)       regular file (data defaults to b"")
    ("dir", name)              directory
    ("symlink", name, target)  symbolic link
    ("hardlink", name, target) hard link to an earlier entry
"""
import io
import itertools
import json
import os
import tarfile

import pytest

MTIME = 1700000000


def build_tar(entries) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for entry in entries:
            kind, name = entry[0], entry[1]
            info = tarfile.TarInfo(name)
            info.mtime = MTIME
            data = None
            if kind == "file":
                data = entry[2] if len(entry) > 2 else b""
                info.size = len(data)
                info.mode = entry[3] if len(entry) > 3 else 0o644
            elif kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = entry[2] if len(entry) > 2 else 0o755
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = entry[2]
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = entry[2]
            else:
                raise ValueError(f"unknown entry kind {kind}")
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    return buf.getvalue()


def tree_snapshot(root) -> dict:
    """Relative path -> file content, link target or None for directories."""
    tree = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = os.path.join(dirpath, name)
            relative = os.path.relpath(path, root)
            if os.path.islink(path):
                tree[relative] = ("link", os.readlink(path))
            elif os.path.isdir(path):
                tree[relative] = None
            else:
                with open(path, "rb") as f:
                    tree[relative] = f.read()
    return tree


@pytest.fixture
def layer_tar(tmp_path):
    """Factory writing a layer archive and returning its path."""
    counter = itertools.count()
    layers_dir = tmp_path / "layers"
    layers_dir.mkdir()

    def _make(entries, name=None):
        path = layers_dir / (name or f"layer{next(counter)}.tar")
        path.write_bytes(build_tar(entries))
        return path

    return _make


def write_image_dir(root, layers, empty_steps=(), manifests=None):
    """
    Lay out an unpacked image archive under root.

    Layer i gets the history command "step i"; empty_steps inserts
    empty_layer history entries before the given layer positions.
    """
    root.mkdir(parents=True, exist_ok=True)
    layer_names = []
    history = []
    for i, entries in enumerate(layers):
        if i in empty_steps:
            history.append({"created_by": f"ENV before {i}", "empty_layer": True})
        history.append({"created_by": f"step {i}"})
        name = f"{i:064x}/layer.tar"
        (root / name).parent.mkdir()
        (root / name).write_bytes(build_tar(entries))
        layer_names.append(name)

    config_name = "c0ffee.json"
    (root / config_name).write_text(json.dumps({
        "architecture": "amd64",
        "os": "linux",
        "history": history,
    }))
    if manifests is None:
        manifests = [{"Config": config_name, "RepoTags": ["demo:latest"], "Layers": layer_names}]
    (root / "manifest.json").write_text(json.dumps(manifests))
    return root


@pytest.fixture
def image_dir(tmp_path):
    """Factory for an unpacked image directory."""
    def _make(layers, **kwargs):
        return write_image_dir(tmp_path / "image", layers, **kwargs)

    return _make


@pytest.fixture
def image_archive(tmp_path):
    """Factory for an exported image archive, as written by docker save."""
    def _make(layers, name="demo.tar", **kwargs):
        root = write_image_dir(tmp_path / "staging", layers, **kwargs)
        path = tmp_path / name
        with tarfile.open(path, "w") as tar:
            for item in sorted(os.listdir(root)):
                tar.add(root / item, arcname=item)
        return path

    return _make


# Base layer, a layer adding and deleting content and a layer on top.
SAMPLE_LAYERS = [
    [
        ("dir", "etc"),
        ("file", "etc/os-release", b"ID=demo\n"),
        ("dir", "app"),
        ("file", "app/main.py", b"print('v1')\n"),
        ("file", "app/old.cfg", b"old\n"),
    ],
    [
        ("dir", "app"),
        ("file", "app/main.py", b"print('v2')\n"),
        ("file", "app/.wh.old.cfg"),
        ("dir", "app/static"),
        ("file", "app/static/index.html", b"<html/>"),
    ],
    [
        ("file", "etc/motd", b"hello\n"),
    ],
]


@pytest.fixture
def sample_layers():
    return SAMPLE_LAYERS


@pytest.fixture
def snapshot():
    return tree_snapshot
