"""Depth-adapted pixel-comparison features.

A feature compares one colour channel at two pixels placed around a sample's
anchor pixel. Offsets are multiplied by the sample's inverse depth so that the
same feature covers the same world-space extent at any distance from the
camera. Offset pixels falling outside the image read as ``OUT_OF_BOUNDS_VALUE``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Sequence

import numpy as np

from errors import InputMismatchError

# Zero padding: every pixel outside the image has value 0 in every channel.
OUT_OF_BOUNDS_VALUE = 0.0


@dataclass(frozen=True, eq=False)
class FeatureSample:
    image_index: int
    x: float
    y: float
    inv_depth: float = 1.0
    descriptor: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))


@dataclass(frozen=True)
class SplitParameter:
    offset1: tuple[float, float]
    offset2: tuple[float, float]
    channel: int
    threshold: float = 0.0

    def with_threshold(self, threshold: float) -> SplitParameter:
        return replace(self, threshold=float(threshold))


class SampleTable:
    """Columnar copy of a sample list for vectorized feature evaluation."""

    def __init__(self, samples: Sequence[FeatureSample]) -> None:
        n = len(samples)
        self.image_index = np.fromiter((s.image_index for s in samples), dtype=np.int64, count=n)
        self.xy = np.array([(s.x, s.y) for s in samples], dtype=np.float64).reshape(n, 2)
        self.inv_depth = np.fromiter((s.inv_depth for s in samples), dtype=np.float64, count=n)

        dims = {np.asarray(s.descriptor).size for s in samples}
        if len(dims) > 1:
            raise InputMismatchError(
                f"all sample descriptors must have the same length, got {sorted(dims)}"
            )
        dim = dims.pop() if dims else 0
        self.descriptors = np.zeros((n, dim), dtype=np.float64)
        for i, s in enumerate(samples):
            self.descriptors[i] = np.asarray(s.descriptor, dtype=np.float64).ravel()

    def __len__(self) -> int:
        return int(self.image_index.size)

    @property
    def descriptor_dim(self) -> int:
        return int(self.descriptors.shape[1])

    def scale(self, rows: np.ndarray, use_depth: bool) -> np.ndarray:
        if use_depth:
            return self.inv_depth[rows]
        return np.ones(rows.size, dtype=np.float64)


def channel_count(images: Sequence[np.ndarray]) -> int:
    """Number of channels available in every image (grayscale counts as one)."""

    counts = [1 if np.ndim(image) == 2 else int(np.shape(image)[2]) for image in images]
    return min(counts) if counts else 0


def generate_random_feature(
    rng: np.random.Generator,
    max_pixel_offset: float,
    n_channels: int,
) -> SplitParameter:
    dx1, dy1, dx2, dy2 = rng.uniform(-max_pixel_offset, max_pixel_offset, size=4)
    channel = int(rng.integers(0, max(n_channels, 1)))
    return SplitParameter(
        offset1=(float(dx1), float(dy1)),
        offset2=(float(dx2), float(dy2)),
        channel=channel,
    )


def _read_pixels(
    image: np.ndarray,
    cols: np.ndarray,
    rows: np.ndarray,
    channel: int,
) -> np.ndarray:
    values = np.full(cols.shape, OUT_OF_BOUNDS_VALUE, dtype=np.float64)
    n_channels = 1 if image.ndim == 2 else image.shape[2]
    if channel >= n_channels:
        return values

    height, width = image.shape[:2]
    inside = (cols >= 0) & (cols < width) & (rows >= 0) & (rows < height)
    if image.ndim == 2:
        values[inside] = image[rows[inside], cols[inside]]
    else:
        values[inside] = image[rows[inside], cols[inside], channel]
    return values


def _pixel_difference(
    image: np.ndarray,
    x: np.ndarray,
    y: np.ndarray,
    scale: np.ndarray,
    split: SplitParameter,
) -> np.ndarray:
    image = np.asarray(image)
    cols1 = np.floor(x + split.offset1[0] * scale + 0.5).astype(np.int64)
    rows1 = np.floor(y + split.offset1[1] * scale + 0.5).astype(np.int64)
    cols2 = np.floor(x + split.offset2[0] * scale + 0.5).astype(np.int64)
    rows2 = np.floor(y + split.offset2[1] * scale + 0.5).astype(np.int64)
    return _read_pixels(image, cols1, rows1, split.channel) - _read_pixels(
        image, cols2, rows2, split.channel
    )


def compute_random_feature(
    image: np.ndarray,
    sample: FeatureSample,
    split: SplitParameter,
    use_depth: bool = True,
) -> float:
    scale = float(sample.inv_depth) if use_depth else 1.0
    value = _pixel_difference(
        image,
        np.array([sample.x], dtype=np.float64),
        np.array([sample.y], dtype=np.float64),
        np.array([scale], dtype=np.float64),
        split,
    )
    return float(value[0])


def compute_random_features(
    images: Sequence[np.ndarray],
    table: SampleTable,
    rows: np.ndarray,
    split: SplitParameter,
    use_depth: bool = True,
) -> np.ndarray:
    """Feature responses of ``rows``, evaluated one source image at a time."""

    rows = np.asarray(rows, dtype=np.int64)
    responses = np.empty(rows.size, dtype=np.float64)
    image_ids = table.image_index[rows]
    scale = table.scale(rows, use_depth)
    for image_id in np.unique(image_ids):
        mask = image_ids == image_id
        selected = rows[mask]
        responses[mask] = _pixel_difference(
            images[int(image_id)],
            table.xy[selected, 0],
            table.xy[selected, 1],
            scale[mask],
            split,
        )
    return responses
