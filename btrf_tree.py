"""Backtracking regression tree.

``build_tree`` grows a tree by recursively splitting (sample, label) pairs with
random pixel-comparison features, controlled by a ``TreeParameter``.
``predict`` returns the world location stored at the leaf whose mean local
descriptor is closest to the query's descriptor, searching the tree with the
random features first and backtracking into other branches until ``max_check``
leaves have been compared.

A built tree is only read by ``predict`` and ``route``; any number of threads
may call them at once. Importing descriptors mutates leaves and must not
overlap with queries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from backtracking_search import bounded_best_first_search
from btrf_logging import get_logger
from errors import EmptyInputError, InputMismatchError, NotBuiltError
from label_stats import LabelStatsProvider
from leaf_index import LeafIndex, squared_l2
from random_feature import FeatureSample, SampleTable, compute_random_feature
from tree_builder import LeafNode, Node, TreeBuilder, TreeBuildMetrics, TreeParameter

LOGGER = get_logger("tree")


@dataclass
class Prediction:
    location: np.ndarray
    distance: float
    leaf_index: int
    checked_leaves: int
    covariance: np.ndarray | None = None


class BTRFTree:
    def __init__(self, params: TreeParameter | None = None) -> None:
        self._params = params or TreeParameter()
        self._build_params: TreeParameter | None = None
        self._nodes: list[Node] = []
        self._leaf_index: LeafIndex | None = None
        self.metrics: TreeBuildMetrics | None = None

    @classmethod
    def from_nodes(cls, nodes: Sequence[Node], params: TreeParameter | None = None) -> BTRFTree:
        """Assemble a tree around an existing node arena (root at id 0).

        The tree takes ownership of the node objects: leaf numbering is written
        into the given ``LeafNode``s and later descriptor imports replace their
        descriptors.
        """
        tree = cls(params)
        nodes = list(nodes)
        if not nodes:
            raise EmptyInputError("a tree needs at least one node")
        leaf_index = LeafIndex(nodes)
        tree._install(nodes, leaf_index, tree._params)
        return tree

    # parameters

    @property
    def tree_parameter(self) -> TreeParameter:
        return self._params

    def get_tree_parameter(self) -> TreeParameter:
        return self._params

    def set_tree_parameter(self, params: TreeParameter) -> None:
        self._params = params

    # structure

    @property
    def is_built(self) -> bool:
        return self._leaf_index is not None

    @property
    def nodes(self) -> tuple[Node, ...]:
        return tuple(self._nodes)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def leaf_count(self) -> int:
        return 0 if self._leaf_index is None else self._leaf_index.leaf_count

    @property
    def leaf_node_ids(self) -> tuple[int, ...]:
        if self._leaf_index is None:
            return ()
        return tuple(self._leaf_index.leaf_node_ids)

    @property
    def leaf_nodes(self) -> tuple[LeafNode, ...]:
        if self._leaf_index is None:
            return ()
        return tuple(self._leaf_index.leaf(i) for i in range(self.leaf_count))

    @property
    def depth(self) -> int:
        return max((node.depth for node in self._nodes), default=0)

    @property
    def build_parameter(self) -> TreeParameter:
        """Parameters the current structure was grown with."""
        return self._build_params or self._params

    @property
    def use_depth(self) -> bool:
        return self.build_parameter.use_depth

    def _install(self, nodes: list[Node], leaf_index: LeafIndex, params: TreeParameter) -> None:
        self._nodes = nodes
        self._leaf_index = leaf_index
        self._build_params = params

    def _require_built(self) -> LeafIndex:
        if self._leaf_index is None:
            raise NotBuiltError("the tree has not been built")
        return self._leaf_index

    # building

    @staticmethod
    def _validate_inputs(
        features: Sequence[FeatureSample],
        labels,
        indices,
        images: Sequence[np.ndarray],
    ) -> tuple[SampleTable, LabelStatsProvider, np.ndarray]:
        labels = np.asarray(labels, dtype=np.float64)
        if labels.ndim == 1:
            labels = labels[:, None]
        if labels.ndim != 2:
            raise InputMismatchError("labels must be a sequence of vectors")
        if len(features) != labels.shape[0]:
            raise InputMismatchError(
                f"got {len(features)} features but {labels.shape[0]} labels"
            )

        rows = np.asarray(indices)
        if rows.size and not np.issubdtype(rows.dtype, np.integer):
            raise InputMismatchError("training indices must be integers")
        rows = rows.astype(np.int64).ravel()
        if rows.size == 0:
            raise EmptyInputError("no training indices")
        if rows.min() < 0 or rows.max() >= len(features):
            raise InputMismatchError("training indices must address the feature list")

        table = SampleTable(features)
        if table.descriptor_dim == 0:
            raise InputMismatchError("samples need a non-empty local descriptor")

        for image in images:
            if np.ndim(image) not in (2, 3):
                raise InputMismatchError("images must be 2D or 3D arrays")
        image_ids = table.image_index[rows]
        if image_ids.min() < 0 or image_ids.max() >= len(images):
            raise InputMismatchError("sample image indices must address the image list")

        return table, LabelStatsProvider(labels), rows

    def build_tree(
        self,
        features: Sequence[FeatureSample],
        labels,
        indices,
        images: Sequence[np.ndarray],
        params: TreeParameter | None = None,
        rng: np.random.Generator | None = None,
    ) -> bool:
        """Grow a new tree from ``features[indices]``.

        The previous tree (if any) is kept untouched when the inputs are rejected.
        If ``rng`` is omitted a generator seeded with ``params.random_state`` is
        used, so repeated builds give identical trees.
        """
        params = params or self._params
        try:
            table, label_stats, rows = self._validate_inputs(features, labels, indices, images)
        except (InputMismatchError, EmptyInputError) as e:
            LOGGER.warning("rejected build: %s", e)
            raise

        builder = TreeBuilder(table, label_stats, images, params, rng=rng)
        nodes = builder.build(rows)
        leaf_index = LeafIndex(nodes)

        self._params = params
        self._install(nodes, leaf_index, params)
        self.metrics = builder.metrics
        return True

    # querying

    def route(self, feature: FeatureSample, image: np.ndarray) -> int:
        """Leaf index reached by plain descent, without backtracking."""
        self._require_built()
        use_depth = self.use_depth
        node = self._nodes[0]
        while not isinstance(node, LeafNode):
            response = compute_random_feature(image, feature, node.split, use_depth)
            node = self._nodes[node.left if response < node.split.threshold else node.right]
        return node.leaf_index

    def predict(self, feature: FeatureSample, image: np.ndarray, max_check: int) -> Prediction:
        leaf_index = self._require_built()
        query = np.asarray(feature.descriptor, dtype=np.float64).ravel()
        if query.size != leaf_index.descriptor_dim:
            raise InputMismatchError(
                f"query descriptor has {query.size} values, leaves have {leaf_index.descriptor_dim}"
            )

        nodes = self._nodes
        use_depth = self.use_depth

        def children(node_id: int):
            node = nodes[node_id]
            if isinstance(node, LeafNode):
                return None
            response = compute_random_feature(image, feature, node.split, use_depth)
            if response < node.split.threshold:
                return node.left, node.right
            return node.right, node.left

        result = bounded_best_first_search(
            0,
            children=children,
            lower_bound=lambda node_id: leaf_index.lower_bound(node_id, query),
            leaf_distance=lambda node_id: squared_l2(nodes[node_id].descriptor, query),
            max_check=max_check,
        )
        leaf: LeafNode = nodes[result.node]  # type: ignore[assignment]
        return Prediction(
            location=leaf.location.copy(),
            distance=result.distance,
            leaf_index=leaf.leaf_index,
            checked_leaves=result.checked,
            covariance=leaf.covariance.copy(),
        )

    # leaf descriptors, one row per leaf in leaf-index order

    def get_leaf_node_descriptor(self) -> np.ndarray:
        return self._require_built().get_leaf_node_descriptor()

    def set_leaf_node_descriptor(self, data: np.ndarray) -> None:
        leaf_index = self._require_built()
        try:
            leaf_index.set_leaf_node_descriptor(data)
        except ValueError as e:
            LOGGER.warning("rejected descriptor import: %s", e)
            raise
