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
Resolution of user supplied layer numbers to absolute layer positions.
"""
from ..exceptions import IndexOutOfRange


def resolve_layer_index(total: int, reference: int) -> int:
    """
    Maps a layer reference to an absolute position.

    Non-negative references are absolute (0 is the base layer), negative
    references count from the top (-1 is the newest layer).

    Args:
        total: Number of layers in the image.
        reference: Signed layer reference.

    Returns:
        Position in [0, total - 1].

    Raises:
        IndexOutOfRange: If the reference does not name an existing layer.
    """
    position = reference if reference >= 0 else total + reference
    if position < 0 or position >= total:
        raise IndexOutOfRange(reference, total)
    return position


def resolve_layer_range(total: int, reference: int, stack: bool = False) -> range:
    """
    Resolves the positions to compose for a single layer reference.

    With ``stack`` the range starts at the base layer, so the result covers
    every layer up to and including the referenced one.
    """
    end = resolve_layer_index(total, reference)
    start = 0 if stack else end
    return range(start, end + 1)
