import numpy as np


class LabelStatsProvider:
    """Per-build cache of regression targets."""

    def __init__(self, labels: np.ndarray) -> None:
        labels = np.asarray(labels, dtype=np.float64)
        if labels.ndim == 1:
            labels = labels[:, None]
        if labels.ndim != 2:
            raise ValueError("labels must be a 1D or 2D array")

        self.labels = labels

    @property
    def dim(self) -> int:
        return int(self.labels.shape[1])

    def sse(self, rows: np.ndarray) -> float:
        """Sum of squared distances of the labels in ``rows`` to their mean."""
        n = len(rows)
        if n == 0:
            return 0.0
        subset = self.labels[rows]
        centred = subset - subset.mean(axis=0)
        return float(np.einsum("ij,ij->", centred, centred))

    def variance(self, rows: np.ndarray) -> float:
        n = len(rows)
        return self.sse(rows) / n if n > 0 else 0.0

    def mean(self, rows: np.ndarray) -> np.ndarray:
        return self.labels[rows].mean(axis=0)

    def covariance(self, rows: np.ndarray) -> np.ndarray:
        subset = self.labels[rows]
        if subset.shape[0] < 2:
            return np.zeros((self.dim, self.dim), dtype=np.float64)
        return np.atleast_2d(np.cov(subset, rowvar=False, bias=True))
