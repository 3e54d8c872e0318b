import logging
from collections import Counter

import numpy as np
import pytest

from btrf_tree import BTRFTree
from errors import (
    DescriptorShapeMismatchError,
    EmptyInputError,
    InputMismatchError,
    InvalidBudgetError,
    NotBuiltError,
)
from random_feature import FeatureSample, SplitParameter, compute_random_feature
from synthetic_scene import make_textured_scene, make_two_cluster_scene
from tree_builder import InternalNode, LeafNode, TreeParameter


def _params(**overrides):
    values = dict(
        max_depth=6,
        min_leaf_samples=5,
        candidate_feature_count=10,
        candidate_threshold_count=8,
        max_pixel_offset=10.0,
        random_state=13,
    )
    values.update(overrides)
    return TreeParameter(**values)


def _collect_tree_signature(tree):
    signature = []
    for node in tree.nodes:
        if isinstance(node, LeafNode):
            signature.append(("L", node.depth, node.sample_count, node.leaf_index))
        else:
            signature.append(
                ("S", node.depth, node.left, node.right, node.split)
            )
    return signature


@pytest.fixture(scope="module")
def scene():
    return make_textured_scene(np.random.default_rng(17), n_samples=300)


@pytest.fixture(scope="module")
def built(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    assert tree.build_tree(features, labels, np.arange(len(features)), images)
    return tree


def _query(rng, image_index=0, dim=6, scale=1.0):
    return FeatureSample(
        image_index=image_index,
        x=float(rng.integers(0, 64)),
        y=float(rng.integers(0, 48)),
        inv_depth=float(rng.uniform(0.5, 1.5)),
        descriptor=scale * rng.normal(size=dim),
    )


def test_leaf_index_is_dense_and_consistent(built):
    leaves = built.leaf_nodes
    assert len(leaves) == built.leaf_count
    assert built.leaf_count == sum(isinstance(n, LeafNode) for n in built.nodes)
    assert built.leaf_count >= 2
    for i, leaf in enumerate(leaves):
        assert leaf.leaf_index == i
        assert built.nodes[built.leaf_node_ids[i]] is leaf


def test_tree_shape_respects_parameters(built):
    params = built.tree_parameter
    assert built.depth <= params.max_depth
    for node in built.nodes:
        if isinstance(node, InternalNode):
            assert node.sample_count > params.min_leaf_samples
            assert node.depth < params.max_depth
            children = (built.nodes[node.left], built.nodes[node.right])
            assert sum(c.sample_count for c in children) == node.sample_count
        else:
            assert node.sample_count >= 1


def test_every_training_sample_routes_to_exactly_one_leaf(scene, built):
    features, _, images = scene
    reached = Counter(
        built.route(sample, images[sample.image_index]) for sample in features
    )
    assert sum(reached.values()) == len(features)
    for leaf in built.leaf_nodes:
        assert reached[leaf.leaf_index] == leaf.sample_count


def test_leaf_statistics_summarize_routed_samples(scene, built):
    features, labels, images = scene
    members = {}
    for i, sample in enumerate(features):
        members.setdefault(built.route(sample, images[sample.image_index]), []).append(i)

    for leaf in built.leaf_nodes:
        rows = members[leaf.leaf_index]
        assert np.allclose(leaf.location, labels[rows].mean(axis=0))
        descriptors = np.stack([features[i].descriptor for i in rows])
        assert np.allclose(leaf.descriptor, descriptors.mean(axis=0))


def test_prediction_distance_is_monotone_in_budget(scene, built):
    _, _, images = scene
    rng = np.random.default_rng(2)
    budgets = [1, 2, 4, 8, 16, built.leaf_count]
    for _ in range(15):
        query = _query(rng)
        distances = [built.predict(query, images[0], budget).distance for budget in budgets]
        assert all(b <= a for a, b in zip(distances, distances[1:]))


def test_full_budget_matches_exhaustive_leaf_scan(scene, built):
    _, _, images = scene
    descriptors = built.get_leaf_node_descriptor()
    rng = np.random.default_rng(3)
    for _ in range(20):
        query = _query(rng)
        prediction = built.predict(query, images[1], built.leaf_count)
        scan = ((descriptors - query.descriptor) ** 2).sum(axis=1)
        assert prediction.leaf_index == int(np.argmin(scan))
        assert prediction.distance == pytest.approx(float(scan.min()))
        assert np.allclose(prediction.location, built.leaf_nodes[prediction.leaf_index].location)


def test_single_check_on_far_query_still_returns_a_leaf(scene, built):
    _, _, images = scene
    rng = np.random.default_rng(4)
    far = _query(rng, scale=1e4)

    quick = built.predict(far, images[0], 1)
    full = built.predict(far, images[0], built.leaf_count)
    assert quick.checked_leaves == 1
    assert 0 <= quick.leaf_index < built.leaf_count
    assert quick.distance >= full.distance


def test_descriptor_round_trip_keeps_predictions(scene, built):
    _, _, images = scene
    rng = np.random.default_rng(5)
    queries = [_query(rng) for _ in range(10)]
    before = [built.predict(q, images[2], 4) for q in queries]
    exported = built.get_leaf_node_descriptor()

    built.set_leaf_node_descriptor(built.get_leaf_node_descriptor())

    assert np.array_equal(built.get_leaf_node_descriptor(), exported)
    after = [built.predict(q, images[2], 4) for q in queries]
    for a, b in zip(before, after):
        assert a.leaf_index == b.leaf_index
        assert a.distance == b.distance


def test_exported_descriptor_matrix_layout(built):
    data = built.get_leaf_node_descriptor()
    assert data.shape == (built.leaf_count, 6)
    assert data.flags["C_CONTIGUOUS"]
    for i, leaf in enumerate(built.leaf_nodes):
        assert np.array_equal(data[i], leaf.descriptor)


def test_mismatched_descriptor_import_is_rejected(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    tree.build_tree(features, labels, np.arange(len(features)), images)
    original = tree.get_leaf_node_descriptor()

    with pytest.raises(DescriptorShapeMismatchError):
        tree.set_leaf_node_descriptor(original[:-1])
    with pytest.raises(DescriptorShapeMismatchError):
        tree.set_leaf_node_descriptor(original[:, :-1])
    assert np.array_equal(tree.get_leaf_node_descriptor(), original)


def test_imported_descriptors_drive_the_search(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    tree.build_tree(features, labels, np.arange(len(features)), images)

    data = np.zeros_like(tree.get_leaf_node_descriptor())
    data[-1] = 100.0
    tree.set_leaf_node_descriptor(data)

    query = FeatureSample(image_index=0, x=5.0, y=5.0, descriptor=np.full(6, 100.0))
    prediction = tree.predict(query, images[0], tree.leaf_count)
    assert prediction.leaf_index == tree.leaf_count - 1
    assert prediction.distance == 0.0


def test_builds_are_deterministic_for_a_fixed_seed(scene):
    features, labels, images = scene
    indices = np.arange(len(features))

    first = BTRFTree(_params(random_state=99))
    second = BTRFTree(_params(random_state=99))
    first.build_tree(features, labels, indices, images)
    second.build_tree(features, labels, indices, images)
    assert _collect_tree_signature(first) == _collect_tree_signature(second)

    injected = BTRFTree(_params())
    injected.build_tree(features, labels, indices, images, rng=np.random.default_rng(99))
    assert _collect_tree_signature(injected) == _collect_tree_signature(first)


def test_two_well_separated_clusters():
    rng = np.random.default_rng(8)
    features, labels, images, groups = make_two_cluster_scene(rng)
    tree = BTRFTree(
        TreeParameter(
            max_depth=3,
            min_leaf_samples=5,
            candidate_feature_count=20,
            candidate_threshold_count=9,
            max_pixel_offset=8.0,
            use_depth=False,
            random_state=8,
        )
    )
    tree.build_tree(features, labels, np.arange(len(features)), images)

    root = tree.nodes[0]
    assert isinstance(root, InternalNode)
    assert tree.leaf_count >= 2

    sides = np.array(
        [compute_random_feature(images[0], f, root.split, False) < root.split.threshold for f in features]
    )
    assert len(set(sides[groups == 0].tolist())) == 1
    assert len(set(sides[groups == 1].tolist())) == 1
    assert sides[groups == 0][0] != sides[groups == 1][0]

    for leaf in tree.leaf_nodes:
        assert np.allclose(leaf.location, [0.0, 0.0], atol=0.5) or np.allclose(
            leaf.location, [10.0, 10.0], atol=0.5
        )


def test_training_subset_only_uses_given_indices(scene):
    features, labels, images = scene
    indices = np.arange(0, len(features), 3)
    tree = BTRFTree(_params())
    tree.build_tree(features, labels, indices, images)
    assert sum(leaf.sample_count for leaf in tree.leaf_nodes) == indices.size


def test_rejected_build_keeps_previous_tree(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    tree.build_tree(features, labels, np.arange(len(features)), images)
    signature = _collect_tree_signature(tree)
    descriptors = tree.get_leaf_node_descriptor()

    with pytest.raises(InputMismatchError):
        tree.build_tree(features, labels[:-1], np.arange(len(features) - 1), images)
    with pytest.raises(InputMismatchError):
        tree.build_tree(features, labels, [0, len(features)], images)
    with pytest.raises(InputMismatchError):
        tree.build_tree(features, labels, np.arange(len(features)), images[:1])
    with pytest.raises(EmptyInputError):
        tree.build_tree(features, labels, [], images)

    assert _collect_tree_signature(tree) == signature
    assert np.array_equal(tree.get_leaf_node_descriptor(), descriptors)


def test_rejected_first_build_leaves_tree_unbuilt(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    with pytest.raises(InputMismatchError):
        tree.build_tree(features[:-1], labels, np.arange(10), images)
    assert not tree.is_built
    assert tree.leaf_count == 0


def test_queries_before_build_raise():
    tree = BTRFTree()
    sample = FeatureSample(image_index=0, x=0.0, y=0.0, descriptor=np.zeros(3))
    image = np.zeros((4, 4, 3))
    with pytest.raises(NotBuiltError):
        tree.predict(sample, image, 5)
    with pytest.raises(NotBuiltError):
        tree.get_leaf_node_descriptor()
    with pytest.raises(NotBuiltError):
        tree.set_leaf_node_descriptor(np.zeros((1, 3)))
    with pytest.raises(NotBuiltError):
        tree.route(sample, image)


@pytest.mark.parametrize("budget", [0, -1])
def test_invalid_budget_is_rejected_without_damage(scene, built, budget):
    _, _, images = scene
    query = _query(np.random.default_rng(6))
    with pytest.raises(InvalidBudgetError):
        built.predict(query, images[0], budget)
    assert built.predict(query, images[0], 3).checked_leaves >= 1


def test_query_descriptor_length_must_match(scene, built):
    _, _, images = scene
    query = FeatureSample(image_index=0, x=1.0, y=1.0, descriptor=np.zeros(4))
    with pytest.raises(InputMismatchError):
        built.predict(query, images[0], 3)


def test_replacing_parameters_does_not_change_built_tree(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    tree.build_tree(features, labels, np.arange(len(features)), images)
    signature = _collect_tree_signature(tree)
    query = _query(np.random.default_rng(7))
    before = tree.predict(query, images[0], 3)

    tree.set_tree_parameter(_params(max_depth=1, use_depth=False))
    assert tree.get_tree_parameter().max_depth == 1
    assert tree.build_parameter.max_depth == 6
    assert _collect_tree_signature(tree) == signature
    after = tree.predict(query, images[0], 3)
    assert before.leaf_index == after.leaf_index

    tree.build_tree(features, labels, np.arange(len(features)), images)
    assert tree.depth <= 1


def test_parameter_validation():
    with pytest.raises(ValueError):
        TreeParameter(min_leaf_samples=0)
    with pytest.raises(ValueError):
        TreeParameter(candidate_feature_count=0)
    with pytest.raises(ValueError):
        TreeParameter(max_pixel_offset=-1.0)

    params = _params(verbose=True)
    assert TreeParameter.from_dict(params.to_dict()) == params


def test_verbose_build_logs_summary(scene, caplog):
    features, labels, images = scene
    caplog.set_level(logging.INFO, logger="btrf.tree_builder")
    BTRFTree(_params(verbose=True, max_depth=2)).build_tree(
        features, labels, np.arange(len(features)), images
    )
    records = [r for r in caplog.records if "built tree" in r.getMessage()]
    assert records
    assert "leaves=" in records[-1].getMessage()


def test_constant_large_labels_give_a_single_leaf(scene):
    features, _, images = scene
    labels = np.tile([-4834.72, 3132.70, 4127.56], (len(features), 1))
    tree = BTRFTree(_params())
    tree.build_tree(features, labels, np.arange(len(features)), images)

    assert tree.leaf_count == 1
    assert tree.node_count == 1
    assert tree.metrics.nodes_split == 0
    assert np.allclose(tree.leaf_nodes[0].location, labels[0])


def test_float_indices_are_rejected(scene):
    features, labels, images = scene
    tree = BTRFTree(_params())
    with pytest.raises(InputMismatchError):
        tree.build_tree(features, labels, [0.7, 1.9], images)
    assert not tree.is_built


def test_from_nodes_numbers_the_given_leaves():
    def leaf(depth, value):
        return LeafNode(
            depth=depth,
            sample_count=1,
            location=np.full(3, value),
            covariance=np.zeros((3, 3)),
            descriptor=np.full(2, value),
        )

    split = SplitParameter(offset1=(1.0, 0.0), offset2=(0.0, 0.0), channel=0)
    left, right = leaf(1, 0.0), leaf(1, 1.0)
    nodes = [InternalNode(split=split, depth=0, left=1, right=2, sample_count=2), left, right]

    tree = BTRFTree.from_nodes(nodes)
    assert tree.leaf_nodes == (left, right)
    assert (left.leaf_index, right.leaf_index) == (0, 1)
