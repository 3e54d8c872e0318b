import argparse
import time
import sys
from pathlib import Path

import numpy as np

# Allow running as: python experiments/quick_btrf_eval.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from btrf_logging import configure_logging
from btrf_tree import BTRFTree
from random_feature import FeatureSample
from tree_builder import TreeParameter


def _smooth_texture(rng, height, width, passes=3):
    image = rng.uniform(0.0, 255.0, size=(height, width, 3))
    for _ in range(passes):
        padded = np.pad(image, ((1, 1), (1, 1), (0, 0)), mode="edge")
        image = (
            padded[:-2, 1:-1] + padded[2:, 1:-1] + padded[1:-1, :-2] + padded[1:-1, 2:]
            + padded[1:-1, 1:-1]
        ) / 5.0
    return image


def _patch_descriptor(image, x, y, radius):
    gray = image.mean(axis=2)
    padded = np.pad(gray, radius, mode="constant")
    patch = padded[y:y + 2 * radius + 1, x:x + 2 * radius + 1].ravel()
    patch = patch - patch.mean()
    norm = np.linalg.norm(patch)
    return patch / norm if norm > 0 else patch


def make_scene(n_images, height, width, focal, rng):
    """Textured fronto-parallel planes at different distances from the camera."""
    images = [_smooth_texture(rng, height, width) for _ in range(n_images)]
    depths = rng.uniform(1.5, 4.0, size=n_images)
    return images, depths, focal


def sample_pixels(scene, n_samples, patch_radius, rng):
    images, depths, focal = scene
    height, width = images[0].shape[:2]
    cx, cy = width / 2.0, height / 2.0

    features = []
    labels = np.zeros((n_samples, 3), dtype=np.float64)
    for i in range(n_samples):
        image_index = int(rng.integers(0, len(images)))
        x = int(rng.integers(0, width))
        y = int(rng.integers(0, height))
        depth = depths[image_index]
        labels[i] = ((x - cx) * depth / focal, (y - cy) * depth / focal, depth)
        features.append(
            FeatureSample(
                image_index=image_index,
                x=float(x),
                y=float(y),
                inv_depth=1.0 / depth,
                descriptor=_patch_descriptor(images[image_index], x, y, patch_radius),
            )
        )
    return features, labels


def evaluate(tree, scene, features, labels, max_checks):
    images = scene[0]
    results = {}
    for max_check in max_checks:
        t0 = time.perf_counter()
        errors = []
        checked = []
        for sample, label in zip(features, labels):
            pred = tree.predict(sample, images[sample.image_index], max_check)
            errors.append(float(np.linalg.norm(pred.location - label)))
            checked.append(pred.checked_leaves)
        results[max_check] = {
            "median_error": float(np.median(errors)),
            "inlier_rate": float(np.mean(np.array(errors) < 0.1)),
            "avg_checked": float(np.mean(checked)),
            "time_ms_per_query": 1000.0 * (time.perf_counter() - t0) / max(len(features), 1),
        }
    return results


def main():
    parser = argparse.ArgumentParser(description="Quick backtracking tree checks on a synthetic scene")
    parser.add_argument("--n-images", type=int, default=4)
    parser.add_argument("--height", type=int, default=120)
    parser.add_argument("--width", type=int, default=160)
    parser.add_argument("--focal", type=float, default=150.0)
    parser.add_argument("--n-train", type=int, default=4000)
    parser.add_argument("--n-test", type=int, default=300)
    parser.add_argument("--patch-radius", type=int, default=2)
    parser.add_argument("--max-depth", type=int, default=12)
    parser.add_argument("--min-leaf-samples", type=int, default=8)
    parser.add_argument("--candidate-features", type=int, default=20)
    parser.add_argument("--candidate-thresholds", type=int, default=10)
    parser.add_argument("--max-pixel-offset", type=float, default=40.0)
    parser.add_argument(
        "--max-checks",
        type=str,
        default="1,4,16,64",
        help="Comma-separated backtracking budgets to evaluate",
    )
    parser.add_argument("--no-depth", action="store_true", help="Disable depth-adapted offsets")
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--random-state", type=int, default=42)

    args = parser.parse_args()
    configure_logging(args.log_level)

    max_checks = [int(v) for v in args.max_checks.split(",") if v.strip()]
    if not max_checks:
        raise ValueError("No max_check values provided")

    rng = np.random.default_rng(args.random_state)
    scene = make_scene(args.n_images, args.height, args.width, args.focal, rng)
    train_features, train_labels = sample_pixels(scene, args.n_train, args.patch_radius, rng)
    test_features, test_labels = sample_pixels(scene, args.n_test, args.patch_radius, rng)

    params = TreeParameter(
        max_depth=args.max_depth,
        min_leaf_samples=args.min_leaf_samples,
        candidate_feature_count=args.candidate_features,
        candidate_threshold_count=args.candidate_thresholds,
        max_pixel_offset=args.max_pixel_offset,
        use_depth=not args.no_depth,
        random_state=args.random_state,
        verbose=True,
    )

    tree = BTRFTree(params)
    t0 = time.perf_counter()
    tree.build_tree(train_features, train_labels, np.arange(len(train_features)), scene[0])
    fit_time = time.perf_counter() - t0
    print(
        f"build time={fit_time:.3f}s"
        f" split_search_time={tree.metrics.split_search_time_sec:.3f}s"
        f" nodes={tree.node_count} leaves={tree.leaf_count} depth={tree.depth}"
    )

    for max_check, out in evaluate(tree, scene, test_features, test_labels, max_checks).items():
        print(
            f"max_check={max_check}"
            f" median_error={out['median_error']:.4f}"
            f" inliers@0.1={out['inlier_rate']:.2f}"
            f" avg_checked={out['avg_checked']:.1f}"
            f" query={out['time_ms_per_query']:.3f}ms"
        )


if __name__ == "__main__":
    main()
