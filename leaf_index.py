from __future__ import annotations

from typing import Sequence

import numpy as np

from errors import DescriptorShapeMismatchError
from tree_builder import LeafNode, Node


def preorder(nodes: Sequence[Node], root: int = 0) -> list[int]:
    """Node ids in left-to-right depth-first order.

    Raises ``ValueError`` if a node is reached twice or some node is unreachable.
    """
    order: list[int] = []
    seen = np.zeros(len(nodes), dtype=bool)
    stack = [root]
    while stack:
        node_id = stack.pop()
        if not 0 <= node_id < len(nodes) or seen[node_id]:
            raise ValueError(f"node {node_id} is out of range or has more than one parent")
        seen[node_id] = True
        order.append(node_id)

        node = nodes[node_id]
        if not isinstance(node, LeafNode):
            stack.append(node.right)
            stack.append(node.left)

    if len(order) != len(nodes):
        raise ValueError(f"{len(nodes) - len(order)} nodes are unreachable from the root")
    return order


def index_leaves(nodes: Sequence[Node], order: Sequence[int] | None = None) -> list[int]:
    """Number leaves 0..L-1 in traversal order and return their node ids."""
    if order is None:
        order = preorder(nodes)

    leaf_node_ids: list[int] = []
    for node_id in order:
        node = nodes[node_id]
        if isinstance(node, LeafNode):
            node.leaf_index = len(leaf_node_ids)
            leaf_node_ids.append(node_id)
    return leaf_node_ids


def descriptor_bounds(
    nodes: Sequence[Node],
    order: Sequence[int],
    descriptor_dim: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-node bounding box of the leaf descriptors below each node."""
    low = np.empty((len(nodes), descriptor_dim), dtype=np.float64)
    high = np.empty((len(nodes), descriptor_dim), dtype=np.float64)

    # reversed preorder visits children before their parent
    for node_id in reversed(order):
        node = nodes[node_id]
        if isinstance(node, LeafNode):
            low[node_id] = node.descriptor
            high[node_id] = node.descriptor
        else:
            low[node_id] = np.minimum(low[node.left], low[node.right])
            high[node_id] = np.maximum(high[node.left], high[node.right])
    return low, high


def squared_l2(a: np.ndarray, b: np.ndarray) -> float:
    diff = a - b
    return float(diff @ diff)


class LeafIndex:
    """Dense leaf addressing plus the descriptor boxes used to bound search.

    ``leaf_node_ids[i]`` is the arena id of the leaf whose ``leaf_index`` is
    ``i``. The boxes are derived data: they are rebuilt whenever leaf
    descriptors are replaced.
    """

    def __init__(self, nodes: Sequence[Node]) -> None:
        self.nodes = nodes
        self._order = preorder(nodes)
        self.leaf_node_ids = index_leaves(nodes, self._order)

        first = self.leaf(0)
        self.descriptor_dim = int(np.asarray(first.descriptor).size)
        self._rebuild_bounds()

    @property
    def leaf_count(self) -> int:
        return len(self.leaf_node_ids)

    def leaf(self, leaf_index: int) -> LeafNode:
        return self.nodes[self.leaf_node_ids[leaf_index]]  # type: ignore[return-value]

    def _rebuild_bounds(self) -> None:
        self.low, self.high = descriptor_bounds(self.nodes, self._order, self.descriptor_dim)

    def lower_bound(self, node_id: int, query: np.ndarray) -> float:
        """Squared distance from ``query`` to the descriptor box of ``node_id``."""
        gap = np.maximum(self.low[node_id] - query, 0.0) + np.maximum(
            query - self.high[node_id], 0.0
        )
        return float(gap @ gap)

    def get_leaf_node_descriptor(self) -> np.ndarray:
        data = np.empty((self.leaf_count, self.descriptor_dim), dtype=np.float64)
        for i in range(self.leaf_count):
            data[i] = self.leaf(i).descriptor
        return data

    def set_leaf_node_descriptor(self, data: np.ndarray) -> None:
        data = np.asarray(data, dtype=np.float64)
        expected = (self.leaf_count, self.descriptor_dim)
        if data.ndim != 2 or data.shape != expected:
            raise DescriptorShapeMismatchError(
                f"descriptor matrix must have shape {expected}, got {data.shape}"
            )

        for i in range(self.leaf_count):
            self.leaf(i).descriptor = data[i].copy()
        self._rebuild_bounds()
