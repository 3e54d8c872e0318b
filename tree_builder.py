from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence, Union

import numpy as np

from btrf_logging import get_logger
from errors import EmptyInputError
from label_stats import LabelStatsProvider
from random_feature import SampleTable, SplitParameter, channel_count
from split_optimizer import SplitOptimizer, SplitSearchParams

LOGGER = get_logger("tree_builder")


@dataclass
class InternalNode:
    split: SplitParameter
    depth: int
    left: int
    right: int
    sample_count: int = 0


@dataclass(eq=False)
class LeafNode:
    depth: int
    sample_count: int
    location: np.ndarray
    covariance: np.ndarray
    descriptor: np.ndarray
    leaf_index: int = -1


Node = Union[InternalNode, LeafNode]


@dataclass
class TreeBuildMetrics:
    nodes_visited: int = 0
    nodes_split: int = 0
    leaves: int = 0
    no_valid_split: int = 0
    split_search_time_sec: float = 0.0
    node_metrics: list[dict] = field(default_factory=list)


@dataclass
class TreeParameter:
    max_depth: int = 15
    min_leaf_samples: int = 10
    candidate_feature_count: int = 20
    candidate_threshold_count: int = 10
    max_pixel_offset: float = 20.0
    use_depth: bool = True
    min_label_variance: float = 1e-12
    random_state: int = 0
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        if self.min_leaf_samples < 1:
            raise ValueError("min_leaf_samples must be >= 1")
        if self.min_label_variance < 0.0:
            raise ValueError("min_label_variance must be >= 0")
        # validates the split search knobs
        self.split_search_params()

    def split_search_params(self) -> SplitSearchParams:
        return SplitSearchParams(
            candidate_feature_count=self.candidate_feature_count,
            candidate_threshold_count=self.candidate_threshold_count,
            max_pixel_offset=self.max_pixel_offset,
            use_depth=self.use_depth,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> TreeParameter:
        known = {name: values[name] for name in cls.__dataclass_fields__ if name in values}
        return cls(**known)


class TreeBuilder:
    """Greedy depth-first partitioning of training samples into an arena of nodes.

    Node 0 is the root. Children are allocated when their parent is split, and
    the left subtree is finished before the right one is started, so a given
    generator state always yields the same arena.
    """

    def __init__(
        self,
        table: SampleTable,
        label_stats: LabelStatsProvider,
        images: Sequence[np.ndarray],
        params: TreeParameter,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.table = table
        self.label_stats = label_stats
        self.images = images
        self.params = params
        self.rng = rng if rng is not None else np.random.default_rng(params.random_state)

        self.optimizer = SplitOptimizer(
            table=table,
            label_stats=label_stats,
            images=images,
            params=params.split_search_params(),
            rng=self.rng,
            n_channels=channel_count(images),
        )
        self.metrics = TreeBuildMetrics()

    def _is_splittable(self, rows: np.ndarray, depth: int) -> bool:
        if depth >= self.params.max_depth:
            return False
        if rows.size <= self.params.min_leaf_samples:
            return False
        if self.label_stats.variance(rows) < self.params.min_label_variance:
            return False
        return True

    def make_leaf(self, rows: np.ndarray, depth: int) -> LeafNode:
        if rows.size == 0:
            raise EmptyInputError("cannot materialize a leaf from zero samples")

        self.metrics.leaves += 1
        return LeafNode(
            depth=depth,
            sample_count=int(rows.size),
            location=self.label_stats.mean(rows),
            covariance=self.label_stats.covariance(rows),
            descriptor=self.table.descriptors[rows].mean(axis=0),
        )

    def build(self, rows: np.ndarray) -> list[Node]:
        rows = np.asarray(rows, dtype=np.int64)
        if rows.size == 0:
            raise EmptyInputError("cannot build a tree from zero samples")

        nodes: list[Node | None] = [None]
        stack = [(0, rows, 0)]

        while stack:
            node_id, node_rows, depth = stack.pop()
            self.metrics.nodes_visited += 1

            if not self._is_splittable(node_rows, depth):
                nodes[node_id] = self.make_leaf(node_rows, depth)
                continue

            result = self.optimizer.search(node_rows)
            self.metrics.split_search_time_sec += result.metrics.time_spent_sec
            self.metrics.node_metrics.append(
                {
                    "depth": depth,
                    "node_size": int(node_rows.size),
                    "candidates": result.metrics.candidates_evaluated,
                    "valid_candidates": result.metrics.valid_candidates,
                    "gain": result.gain,
                }
            )

            if result.split is None or result.gain <= 0.0:
                self.metrics.no_valid_split += 1
                LOGGER.debug("no valid split at depth=%d size=%d", depth, node_rows.size)
                nodes[node_id] = self.make_leaf(node_rows, depth)
                continue

            left_id = len(nodes)
            right_id = left_id + 1
            nodes.extend([None, None])
            nodes[node_id] = InternalNode(
                split=result.split,
                depth=depth,
                left=left_id,
                right=right_id,
                sample_count=int(node_rows.size),
            )
            self.metrics.nodes_split += 1
            LOGGER.debug(
                "split depth=%d size=%d left=%d right=%d gain=%.6g",
                depth,
                node_rows.size,
                result.left_rows.size,
                result.right_rows.size,
                result.gain,
            )

            stack.append((right_id, result.right_rows, depth + 1))
            stack.append((left_id, result.left_rows, depth + 1))

        LOGGER.log(
            logging.INFO if self.params.verbose else logging.DEBUG,
            "built tree: samples=%d nodes=%d leaves=%d no_valid_split=%d split_time=%.3fs",
            rows.size,
            len(nodes),
            self.metrics.leaves,
            self.metrics.no_valid_split,
            self.metrics.split_search_time_sec,
        )
        return nodes  # type: ignore[return-value]
