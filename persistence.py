"""Save and restore a single tree as a NumPy ``.npz`` archive.

Topology and split parameters are stored per node; leaf statistics and the
leaf descriptor matrix are stored per leaf in leaf-index order. Loading goes
through ``BTRFTree.from_nodes`` followed by ``set_leaf_node_descriptor``.
"""

from __future__ import annotations

import json
import os

import numpy as np

from btrf_logging import get_logger
from btrf_tree import BTRFTree
from random_feature import SplitParameter
from tree_builder import InternalNode, LeafNode, Node, TreeParameter

LOGGER = get_logger("persistence")

_INTERNAL = 0
_LEAF = 1


def tree_to_arrays(tree: BTRFTree) -> dict[str, np.ndarray]:
    descriptors = tree.get_leaf_node_descriptor()
    nodes = tree.nodes
    n = len(nodes)

    kind = np.full(n, _LEAF, dtype=np.int8)
    left = np.full(n, -1, dtype=np.int64)
    right = np.full(n, -1, dtype=np.int64)
    depth = np.zeros(n, dtype=np.int64)
    sample_count = np.zeros(n, dtype=np.int64)
    offsets = np.zeros((n, 4), dtype=np.float64)
    channel = np.zeros(n, dtype=np.int64)
    threshold = np.zeros(n, dtype=np.float64)

    for node_id, node in enumerate(nodes):
        depth[node_id] = node.depth
        sample_count[node_id] = node.sample_count
        if isinstance(node, InternalNode):
            kind[node_id] = _INTERNAL
            left[node_id] = node.left
            right[node_id] = node.right
            offsets[node_id] = (*node.split.offset1, *node.split.offset2)
            channel[node_id] = node.split.channel
            threshold[node_id] = node.split.threshold

    leaves = tree.leaf_nodes
    leaf_node_ids = np.array(tree.leaf_node_ids, dtype=np.int64)
    return {
        "kind": kind,
        "left": left,
        "right": right,
        "depth": depth,
        "sample_count": sample_count,
        "split_offsets": offsets,
        "split_channel": channel,
        "split_threshold": threshold,
        "leaf_node_ids": leaf_node_ids,
        "leaf_location": np.stack([leaf.location for leaf in leaves]),
        "leaf_covariance": np.stack([leaf.covariance for leaf in leaves]),
        "leaf_descriptor": descriptors,
        "params": np.array(json.dumps(tree.build_parameter.to_dict())),
    }


def tree_from_arrays(arrays: dict[str, np.ndarray]) -> BTRFTree:
    kind = arrays["kind"]
    leaf_node_ids = [int(i) for i in arrays["leaf_node_ids"]]
    descriptors = np.asarray(arrays["leaf_descriptor"], dtype=np.float64)
    position = {node_id: i for i, node_id in enumerate(leaf_node_ids)}

    nodes: list[Node] = []
    for node_id in range(kind.size):
        if kind[node_id] == _INTERNAL:
            dx1, dy1, dx2, dy2 = (float(v) for v in arrays["split_offsets"][node_id])
            split = SplitParameter(
                offset1=(dx1, dy1),
                offset2=(dx2, dy2),
                channel=int(arrays["split_channel"][node_id]),
                threshold=float(arrays["split_threshold"][node_id]),
            )
            nodes.append(
                InternalNode(
                    split=split,
                    depth=int(arrays["depth"][node_id]),
                    left=int(arrays["left"][node_id]),
                    right=int(arrays["right"][node_id]),
                    sample_count=int(arrays["sample_count"][node_id]),
                )
            )
        else:
            i = position.get(node_id)
            if i is None:
                raise ValueError("stored leaf order does not match the stored topology")
            nodes.append(
                LeafNode(
                    depth=int(arrays["depth"][node_id]),
                    sample_count=int(arrays["sample_count"][node_id]),
                    location=np.array(arrays["leaf_location"][i], dtype=np.float64),
                    covariance=np.array(arrays["leaf_covariance"][i], dtype=np.float64),
                    descriptor=np.zeros(descriptors.shape[1], dtype=np.float64),
                )
            )

    params = TreeParameter.from_dict(json.loads(str(arrays["params"])))
    tree = BTRFTree.from_nodes(nodes, params)

    if list(tree.leaf_node_ids) != leaf_node_ids:
        raise ValueError("stored leaf order does not match the stored topology")

    tree.set_leaf_node_descriptor(descriptors)
    return tree


def save_tree(tree: BTRFTree, path: str | os.PathLike) -> None:
    arrays = tree_to_arrays(tree)
    np.savez_compressed(path, **arrays)
    LOGGER.info(
        "saved tree: nodes=%d leaves=%d path=%s", tree.node_count, tree.leaf_count, path
    )


def load_tree(path: str | os.PathLike) -> BTRFTree:
    with np.load(path, allow_pickle=False) as data:
        arrays = {key: data[key] for key in data.files}
    tree = tree_from_arrays(arrays)
    LOGGER.info(
        "loaded tree: nodes=%d leaves=%d path=%s", tree.node_count, tree.leaf_count, path
    )
    return tree
