from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
from scipy import linalg

logger = logging.getLogger(__name__)

# Covariances whose determinant drops below this get a diagonal ridge.
MIN_DETERMINANT = 1e-10
_RIDGE_START = 1e-6
_RIDGE_GROWTH = 10.0
_MAX_RIDGE_ATTEMPTS = 12
_LOG_2PI = math.log(2.0 * math.pi)


class GaussianCluster:
    """One multivariate Gaussian component of a mixture.

    The covariance is stored together with its lower Cholesky factor so that
    densities are evaluated with triangular solves rather than explicit inverses.
    Setting a covariance that is (numerically) singular adds a growing diagonal
    ridge until the factorisation succeeds and the determinant clears
    ``MIN_DETERMINANT``; such clusters are flagged ``degenerate``.
    """

    def __init__(self, mean: np.ndarray, covariance: np.ndarray, weight: float) -> None:
        self.mean = np.asarray(mean, dtype=float).reshape(-1)
        self.weight = float(weight)
        self.degenerate = False
        self.covariance = np.eye(self.n_dims)
        self._chol = np.eye(self.n_dims)
        self._log_det = 0.0
        self.set_covariance(covariance)

    @property
    def n_dims(self) -> int:
        return int(self.mean.shape[0])

    @property
    def log_determinant(self) -> float:
        return self._log_det

    @property
    def determinant(self) -> float:
        return math.exp(self._log_det)

    def set_covariance(self, covariance: np.ndarray) -> None:
        cov = np.asarray(covariance, dtype=float).reshape(self.n_dims, self.n_dims)
        cov = 0.5 * (cov + cov.T)
        self.degenerate = False

        chol = self._factor(cov)
        if chol is None:
            scale = float(np.mean(np.abs(np.diag(cov))))
            if not math.isfinite(scale) or scale <= 0.0:
                scale = 1.0
            ridge = _RIDGE_START * scale
            for _ in range(_MAX_RIDGE_ATTEMPTS):
                cov = cov + ridge * np.eye(self.n_dims)
                chol = self._factor(cov)
                if chol is not None:
                    break
                ridge *= _RIDGE_GROWTH
            if chol is None:
                # Give up on the data-driven shape entirely.
                cov = scale * np.eye(self.n_dims)
                chol = np.linalg.cholesky(cov)
            self.degenerate = True
            logger.debug("Covariance regularised with diagonal ridge (scale=%.3g)", scale)

        self.covariance = cov
        self._chol = chol
        self._log_det = 2.0 * float(np.sum(np.log(np.diag(chol))))

    @staticmethod
    def _factor(cov: np.ndarray) -> Optional[np.ndarray]:
        if not np.all(np.isfinite(cov)):
            return None
        try:
            chol = linalg.cholesky(cov, lower=True)
        except linalg.LinAlgError:
            return None
        log_det = 2.0 * float(np.sum(np.log(np.diag(chol))))
        if not math.isfinite(log_det) or log_det < math.log(MIN_DETERMINANT):
            return None
        return chol

    def log_density(self, X: np.ndarray) -> np.ndarray:
        """Natural-log density of each row of ``X`` (shape ``(n, d)``)."""
        X = np.atleast_2d(X)
        diff = (X - self.mean).T
        z = linalg.solve_triangular(self._chol, diff, lower=True, check_finite=False)
        maha = np.sum(z * z, axis=0)
        return -0.5 * (self.n_dims * _LOG_2PI + self._log_det + maha)

    def marginal_log_density(self, X: np.ndarray) -> np.ndarray:
        """Per-dimension one-dimensional marginal log densities, shape ``(n, d)``."""
        X = np.atleast_2d(X)
        var = np.diag(self.covariance)
        return -0.5 * (_LOG_2PI + np.log(var) + (X - self.mean) ** 2 / var)

    def inverse_trace_product(self, scale: np.ndarray) -> float:
        """``tr(scale @ covariance^-1)``, used by the covariance prior."""
        inv_chol = linalg.solve_triangular(self._chol, np.eye(self.n_dims), lower=True)
        inv = inv_chol.T @ inv_chol
        return float(np.trace(scale @ inv))

    def to_dict(self) -> dict:
        return {
            "weight": self.weight,
            "mean": self.mean.tolist(),
            "covariance": self.covariance.tolist(),
            "degenerate": self.degenerate,
        }

    def __repr__(self) -> str:
        return f"GaussianCluster(weight={self.weight:.4f}, mean={np.round(self.mean, 3).tolist()})"
