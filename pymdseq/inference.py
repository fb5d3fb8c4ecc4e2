from abc import ABC
from abc import abstractmethod
from typing import Literal

import numpy as np

from pymdseq.utils import FeatureFit
from pymdseq.utils import FitStrategy
from pymdseq.utils import OutlierReport


class Inference(ABC):
    """Abstract class with mean-dispersion GLM inference methods."""

    @abstractmethod
    def fit_md_glm(
        self,
        counts: np.ndarray,
        design_matrix: np.ndarray,
        disp_design_matrix: np.ndarray,
        offsets: np.ndarray,
        strategy: FitStrategy,
        min_mu: float,
        min_disp: float,
        max_disp: float,
        beta_tol: float,
        maxiter: int = 250,
        zi_maxiter: int = 200,
        max_beta: float = 30,
        optimizer: Literal["SLSQP", "trust-constr"] = "SLSQP",
    ) -> list[FeatureFit]:
        r"""Fit a mean-dispersion GLM to the counts of every feature.

        Means and dispersions are both modelled with log links,
        :math:`\log \mu = X\beta + o` and :math:`\log \alpha = Z\gamma`.

        Parameters
        ----------
        counts : ndarray
            Counts, one column per feature. NaN entries are excluded from the
            likelihood.

        design_matrix : ndarray
            Mean design matrix.

        disp_design_matrix : ndarray
            Dispersion design matrix.

        offsets : ndarray
            Log-scale offsets of the mean model, of the same shape as ``counts``.

        strategy : FitStrategy
            Whether to fit the plain or the zero-inflated model.

        min_mu : float
            Lower bound on estimated means, to ensure numerical stability.
            (default: ``0.5``).

        min_disp : float
            Lower bound on estimated dispersions. (default: ``1e-8``).

        max_disp : float
            Upper bound on estimated dispersions. (default: ``10``).

        beta_tol : float
            Relative log-likelihood tolerance of the optimizers.
            (default: ``1e-8``).

        maxiter : int
            Maximum number of scoring iterations. (default: ``250``).

        zi_maxiter : int
            Maximum number of EM iterations, for zero-inflated fits.
            (default: ``200``).

        max_beta : float
            Bound on the absolute value of mean coefficients. (default: ``30``).

        optimizer : str
            Constrained optimizing method to use in case scoring starts diverging.
            Accepted values: 'SLSQP' or 'trust-constr'. (default: ``'SLSQP'``).

        Returns
        -------
        list of FeatureFit
            One fit per feature, in the column order of ``counts``.
        """

    @abstractmethod
    def detect_outliers(
        self,
        counts: np.ndarray,
        design_matrix: np.ndarray,
        disp_design_matrix: np.ndarray,
        offsets: np.ndarray,
        strategy: FitStrategy,
        cutoff_policy: Literal["f", "chisq", "empirical"],
        cutoff_quantile: float,
        max_outlier_fraction: float,
        min_mu: float,
        min_disp: float,
        max_disp: float,
        beta_tol: float,
        maxiter: int = 250,
        zi_maxiter: int = 200,
    ) -> list[OutlierReport]:
        """Flag influential observations of every feature and refit without them.

        Parameters
        ----------
        counts : ndarray
            Counts, one column per feature.

        design_matrix : ndarray
            Mean design matrix.

        disp_design_matrix : ndarray
            Dispersion design matrix.

        offsets : ndarray
            Log-scale offsets of the mean model, of the same shape as ``counts``.

        strategy : FitStrategy
            Strategy of the refit on cleaned counts.

        cutoff_policy : str
            Influence cutoff policy: ``"f"``, ``"chisq"`` or ``"empirical"``.

        cutoff_quantile : float
            Quantile used by the ``"f"`` and ``"chisq"`` policies.

        max_outlier_fraction : float
            Maximum fraction of the observations of a feature that may be flagged.

        min_mu : float
            Lower bound on estimated means.

        min_disp : float
            Lower bound on estimated dispersions.

        max_disp : float
            Upper bound on estimated dispersions.

        beta_tol : float
            Relative log-likelihood tolerance of the optimizers.

        maxiter : int
            Maximum number of scoring iterations. (default: ``250``).

        zi_maxiter : int
            Maximum number of EM iterations, for zero-inflated refits.
            (default: ``200``).

        Returns
        -------
        list of OutlierReport
            One report per feature, in the column order of ``counts``.
        """

    @abstractmethod
    def wald_test(
        self,
        coefs: np.ndarray,
        information: np.ndarray,
        contrast: np.ndarray,
        lfc_threshold: float,
        singular: np.ndarray,
    ) -> tuple[
        np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray
    ]:
        """Run classical and threshold Wald tests for a contrast, for every feature.

        Parameters
        ----------
        coefs : ndarray
            Stacked mean and dispersion coefficients, one row per feature.

        information : ndarray
            Information matrices, of shape ``(n_features, k, k)``.

        contrast : ndarray
            Contrast vector over the stacked coefficients.

        lfc_threshold : float
            Threshold on the absolute effect, in natural log scale.

        singular : ndarray
            Boolean mask of features with a singular information matrix.

        Returns
        -------
        estimate : ndarray
            Contrast estimates, in natural log scale.

        se : ndarray
            Standard errors of the estimates.

        stat : ndarray
            Classical Wald statistics.

        pvalue : ndarray
            Classical Wald p-values.

        thr_stat : ndarray
            Threshold Wald statistics.

        thr_pvalue : ndarray
            Threshold Wald p-values.
        """
