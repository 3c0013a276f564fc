from __future__ import annotations

"""Unscented quadrature: deterministic sigma points and Gaussian reconstruction."""

from dataclasses import dataclass

import numpy as np

from .errors import DegenerateCovarianceError

_SYMMETRY_TOLERANCE = 1e-9
_NEGATIVE_EIGENVALUE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class SigmaPoints:
    points: np.ndarray
    mean_weights: np.ndarray
    covariance_weights: np.ndarray

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def pairs(self) -> list[tuple[float, np.ndarray]]:
        return [(float(weight), point) for weight, point in zip(self.mean_weights, self.points, strict=True)]


def check_covariance(covariance: np.ndarray) -> np.ndarray:
    """Return the symmetrised covariance or raise if it is not positive semi-definite."""
    cov = np.asarray(covariance, dtype=np.float64)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise DegenerateCovarianceError(f"covariance must be square, got shape {cov.shape}")
    if not np.all(np.isfinite(cov)):
        raise DegenerateCovarianceError("covariance has non-finite entries")

    scale = max(1.0, float(np.max(np.abs(cov))) if cov.size else 1.0)
    if np.max(np.abs(cov - cov.T), initial=0.0) > _SYMMETRY_TOLERANCE * scale:
        raise DegenerateCovarianceError("covariance is not symmetric")
    cov = 0.5 * (cov + cov.T)
    eigenvalues = np.linalg.eigvalsh(cov)
    if eigenvalues.size and eigenvalues[0] < -_NEGATIVE_EIGENVALUE_TOLERANCE * scale:
        raise DegenerateCovarianceError(
            f"covariance is not positive semi-definite (min eigenvalue {eigenvalues[0]:.3g})"
        )
    return cov


def ensure_positive_semidefinite(covariance: np.ndarray) -> np.ndarray:
    """Symmetrise and clip negative eigenvalues produced by rounding or negative weights."""
    cov = 0.5 * (np.asarray(covariance, dtype=np.float64) + np.asarray(covariance, dtype=np.float64).T)
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    if eigenvalues[0] >= 0.0:
        return cov
    eigenvalues = np.clip(eigenvalues, 0.0, None)
    repaired = (eigenvectors * eigenvalues) @ eigenvectors.T
    return 0.5 * (repaired + repaired.T)


class UnscentedQuadrature:
    """Scaled unscented transform with ``2n + 1`` points.

    Point order is the mean, then ``mean + c * s_j`` for each eigen-direction
    ``s_j`` of the covariance, then ``mean - c * s_j``, with
    ``c = sqrt(n + lambda)`` and ``lambda = alpha^2 (n + kappa) - n``.
    """

    def __init__(self, alpha: float = 1.0, beta: float = 2.0, kappa: float = 0.0) -> None:
        if not alpha > 0.0:
            raise ValueError("unscented alpha must be > 0")
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.kappa = float(kappa)

    def scaling(self, dimension: int) -> float:
        return self.alpha**2 * (dimension + self.kappa) - dimension

    def spread(self, dimension: int) -> float:
        return float(np.sqrt(dimension + self.scaling(dimension)))

    def weights(self, dimension: int) -> tuple[np.ndarray, np.ndarray]:
        lam = self.scaling(dimension)
        mean_weights = np.full(2 * dimension + 1, 0.5 / (dimension + lam), dtype=np.float64)
        mean_weights[0] = lam / (dimension + lam)
        covariance_weights = mean_weights.copy()
        covariance_weights[0] += 1.0 - self.alpha**2 + self.beta
        return mean_weights, covariance_weights

    def sigma_points(self, mean: np.ndarray, covariance: np.ndarray) -> SigmaPoints:
        mean = np.asarray(mean, dtype=np.float64).reshape(-1)
        cov = check_covariance(covariance)
        dimension = mean.shape[0]
        if cov.shape != (dimension, dimension):
            raise DegenerateCovarianceError(
                f"covariance shape {cov.shape} does not match mean dimension {dimension}"
            )

        eigenvalues, eigenvectors = np.linalg.eigh(cov)
        directions = eigenvectors * np.sqrt(np.clip(eigenvalues, 0.0, None))[None, :]
        spread = self.spread(dimension)

        points = np.empty((2 * dimension + 1, dimension), dtype=np.float64)
        points[0] = mean
        points[1 : dimension + 1] = mean[None, :] + spread * directions.T
        points[dimension + 1 :] = mean[None, :] - spread * directions.T
        mean_weights, covariance_weights = self.weights(dimension)
        return SigmaPoints(points=points, mean_weights=mean_weights, covariance_weights=covariance_weights)


def sigma_points(mean: np.ndarray, covariance: np.ndarray, ut_alpha: float) -> list[tuple[float, np.ndarray]]:
    """Ordered (mean weight, point) pairs; a pure function of its inputs."""
    return UnscentedQuadrature(alpha=ut_alpha).sigma_points(mean, covariance).pairs()


def reconstruct_gaussian(
    points: np.ndarray,
    mean_weights: np.ndarray,
    covariance_weights: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Weighted mean and covariance of transformed points, normalised by the mean-weight sum."""
    points = np.asarray(points, dtype=np.float64)
    mean_weights = np.asarray(mean_weights, dtype=np.float64)
    covariance_weights = np.asarray(covariance_weights, dtype=np.float64)
    total = float(mean_weights.sum())
    if not np.isfinite(total) or total <= 0.0:
        raise DegenerateCovarianceError(f"sigma-point weights do not normalise (sum={total:.3g})")

    mean = mean_weights @ points / total
    centered = points - mean[None, :]
    covariance = (covariance_weights[:, None] * centered).T @ centered / total
    return mean, ensure_positive_semidefinite(covariance)
