from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Sequence

import numpy as np

from label_stats import LabelStatsProvider
from random_feature import (
    SampleTable,
    SplitParameter,
    compute_random_features,
    generate_random_feature,
)


@dataclass
class SplitSearchMetrics:
    candidates_evaluated: int = 0
    thresholds_evaluated: int = 0
    valid_candidates: int = 0
    time_spent_sec: float = 0.0


@dataclass
class SplitSearchResult:
    split: SplitParameter | None
    score: float
    parent_score: float
    left_rows: np.ndarray
    right_rows: np.ndarray
    metrics: SplitSearchMetrics = field(default_factory=SplitSearchMetrics)

    @property
    def gain(self) -> float:
        if self.split is None:
            return -float("inf")
        return self.parent_score - self.score


@dataclass
class SplitSearchParams:
    candidate_feature_count: int = 20
    candidate_threshold_count: int = 10
    max_pixel_offset: float = 20.0
    use_depth: bool = True

    def __post_init__(self) -> None:
        if self.candidate_feature_count <= 0:
            raise ValueError("candidate_feature_count must be positive")
        if self.candidate_threshold_count <= 0:
            raise ValueError("candidate_threshold_count must be positive")
        if self.max_pixel_offset < 0.0:
            raise ValueError("max_pixel_offset must be >= 0")


def candidate_thresholds(responses: np.ndarray, count: int) -> np.ndarray:
    """Evenly spaced interior quantiles of ``responses``, deduplicated and sorted."""
    if responses.size == 0:
        return np.empty(0, dtype=np.float64)
    quantiles = np.linspace(0.0, 1.0, count + 2)[1:-1]
    return np.unique(np.quantile(responses, quantiles))


class SplitOptimizer:
    """Randomized search for the split that minimizes within-child label spread.

    Each candidate feature is scored at every candidate threshold in one pass:
    responses are sorted once and prefix sums of labels and squared label norms
    give both children's sum of squared errors for all thresholds.
    """

    def __init__(
        self,
        table: SampleTable,
        label_stats: LabelStatsProvider,
        images: Sequence[np.ndarray],
        params: SplitSearchParams,
        rng: np.random.Generator,
        n_channels: int,
    ) -> None:
        self.table = table
        self.label_stats = label_stats
        self.images = images
        self.params = params
        self.rng = rng
        self.n_channels = n_channels

    def _score_thresholds(
        self,
        responses: np.ndarray,
        rows: np.ndarray,
        thresholds: np.ndarray,
    ) -> np.ndarray:
        order = np.argsort(responses, kind="stable")
        sorted_responses = responses[order]
        ordered_rows = rows[order]

        labels = self.label_stats.labels[ordered_rows]
        # prefix sums run on labels centred on the node mean
        labels = labels - labels.mean(axis=0)
        sq_norms = np.einsum("ij,ij->i", labels, labels)
        prefix_y = np.vstack([np.zeros((1, labels.shape[1])), np.cumsum(labels, axis=0)])
        prefix_sq = np.concatenate([[0.0], np.cumsum(sq_norms)])

        n = rows.size
        # left child takes responses strictly below the threshold
        left_n = np.searchsorted(sorted_responses, thresholds, side="left")
        right_n = n - left_n

        sum_l = prefix_y[left_n]
        sum_r = prefix_y[-1] - sum_l
        sq_l = prefix_sq[left_n]
        sq_r = prefix_sq[-1] - sq_l

        with np.errstate(divide="ignore", invalid="ignore"):
            sse_l = sq_l - np.einsum("ij,ij->i", sum_l, sum_l) / left_n
            sse_r = sq_r - np.einsum("ij,ij->i", sum_r, sum_r) / right_n

        scores = np.maximum(sse_l, 0.0) + np.maximum(sse_r, 0.0)
        scores[(left_n == 0) | (right_n == 0)] = np.inf
        return scores

    def search(self, rows: np.ndarray) -> SplitSearchResult:
        start = time.perf_counter()
        metrics = SplitSearchMetrics()
        rows = np.asarray(rows, dtype=np.int64)
        parent_score = self.label_stats.sse(rows)

        best_split: SplitParameter | None = None
        best_score = float("inf")
        best_responses: np.ndarray | None = None

        for _ in range(self.params.candidate_feature_count):
            feature = generate_random_feature(
                self.rng, self.params.max_pixel_offset, self.n_channels
            )
            responses = compute_random_features(
                self.images, self.table, rows, feature, use_depth=self.params.use_depth
            )
            thresholds = candidate_thresholds(
                responses, self.params.candidate_threshold_count
            )
            metrics.candidates_evaluated += 1
            metrics.thresholds_evaluated += int(thresholds.size)
            if thresholds.size == 0:
                continue

            scores = self._score_thresholds(responses, rows, thresholds)
            j = int(np.argmin(scores))
            if not np.isfinite(scores[j]):
                continue

            metrics.valid_candidates += 1
            if scores[j] < best_score:
                best_score = float(scores[j])
                best_split = feature.with_threshold(thresholds[j])
                best_responses = responses

        metrics.time_spent_sec = time.perf_counter() - start
        if best_split is None or best_responses is None:
            empty = np.empty(0, dtype=np.int64)
            return SplitSearchResult(None, float("inf"), parent_score, empty, empty, metrics)

        left_mask = best_responses < best_split.threshold
        return SplitSearchResult(
            split=best_split,
            score=best_score,
            parent_score=parent_score,
            left_rows=rows[left_mask],
            right_rows=rows[~left_mask],
            metrics=metrics,
        )
