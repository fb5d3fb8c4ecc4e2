from typing import Literal

import numpy as np
from joblib import Parallel  # type: ignore
from joblib import delayed
from joblib import parallel_backend

from pymdseq import inference
from pymdseq import utils


class DefaultInference(inference.Inference):
    """Default mean-dispersion GLM inference methods, using scipy/sklearn/numpy.

    This object contains the interface to the default inference routines and uses
    joblib internally for parallelization. Features are processed independently, and
    results are always returned in feature order whatever the number of cpus.
    Inherit this class or its parent to write custom inference routines.

    Parameters
    ----------
    joblib_verbosity : int
        The verbosity level for joblib tasks. The higher the value, the more updates
        are reported. (default: ``0``).
    batch_size : int
        Number of tasks to allocate to each joblib parallel worker. (default: ``128``).
    n_cpus : int
        Number of cpus to use. If None, all available cpus will be used.
        (default: ``None``).
    backend : str
        Joblib backend.
    """

    def __init__(
        self,
        joblib_verbosity: int = 0,
        batch_size: int = 128,
        n_cpus: int | None = None,
        backend: str = "loky",
    ):
        self._joblib_verbosity = joblib_verbosity
        self._batch_size = batch_size
        self._n_cpus = utils.get_num_processes(n_cpus)
        self._backend = backend

    @property
    def n_cpus(self) -> int:  # noqa: D102
        return self._n_cpus

    @n_cpus.setter
    def n_cpus(self, n_cpus: int) -> None:
        self._n_cpus = utils.get_num_processes(n_cpus)

    def fit_md_glm(  # noqa: D102
        self,
        counts: np.ndarray,
        design_matrix: np.ndarray,
        disp_design_matrix: np.ndarray,
        offsets: np.ndarray,
        strategy: utils.FitStrategy,
        min_mu: float,
        min_disp: float,
        max_disp: float,
        beta_tol: float,
        maxiter: int = 250,
        zi_maxiter: int = 200,
        max_beta: float = 30,
        optimizer: Literal["SLSQP", "trust-constr"] = "SLSQP",
    ) -> list[utils.FeatureFit]:
        with parallel_backend(self._backend, inner_max_num_threads=1):
            res = Parallel(
                n_jobs=self.n_cpus,
                verbose=self._joblib_verbosity,
                batch_size=self._batch_size,
            )(
                delayed(utils.fit_feature)(
                    strategy=strategy,
                    counts=counts[:, i],
                    design_matrix=design_matrix,
                    disp_design_matrix=disp_design_matrix,
                    offset=offsets[:, i],
                    zi_maxiter=zi_maxiter,
                    min_mu=min_mu,
                    min_disp=min_disp,
                    max_disp=max_disp,
                    beta_tol=beta_tol,
                    maxiter=maxiter,
                    max_beta=max_beta,
                    optimizer=optimizer,
                )
                for i in range(counts.shape[1])
            )
        return list(res)

    def detect_outliers(  # noqa: D102
        self,
        counts: np.ndarray,
        design_matrix: np.ndarray,
        disp_design_matrix: np.ndarray,
        offsets: np.ndarray,
        strategy: utils.FitStrategy,
        cutoff_policy: Literal["f", "chisq", "empirical"],
        cutoff_quantile: float,
        max_outlier_fraction: float,
        min_mu: float,
        min_disp: float,
        max_disp: float,
        beta_tol: float,
        maxiter: int = 250,
        zi_maxiter: int = 200,
    ) -> list[utils.OutlierReport]:
        with parallel_backend(self._backend, inner_max_num_threads=1):
            res = Parallel(
                n_jobs=self.n_cpus,
                verbose=self._joblib_verbosity,
                batch_size=self._batch_size,
            )(
                delayed(utils.detect_outliers)(
                    counts=counts[:, i],
                    design_matrix=design_matrix,
                    disp_design_matrix=disp_design_matrix,
                    offset=offsets[:, i],
                    strategy=strategy,
                    cutoff_policy=cutoff_policy,
                    cutoff_quantile=cutoff_quantile,
                    max_outlier_fraction=max_outlier_fraction,
                    zi_maxiter=zi_maxiter,
                    min_mu=min_mu,
                    min_disp=min_disp,
                    max_disp=max_disp,
                    beta_tol=beta_tol,
                    maxiter=maxiter,
                )
                for i in range(counts.shape[1])
            )
        return list(res)

    def wald_test(  # noqa: D102
        self,
        coefs: np.ndarray,
        information: np.ndarray,
        contrast: np.ndarray,
        lfc_threshold: float,
        singular: np.ndarray,
    ) -> tuple[
        np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray
    ]:
        num_features = coefs.shape[0]
        if num_features == 0:
            return tuple(np.array([]) for _ in range(6))  # type: ignore
        with parallel_backend(self._backend, inner_max_num_threads=1):
            res = Parallel(
                n_jobs=self.n_cpus,
                verbose=self._joblib_verbosity,
                batch_size=self._batch_size,
            )(
                delayed(utils.wald_test)(
                    coefs=coefs[i],
                    information=information[i],
                    contrast=contrast,
                    lfc_threshold=lfc_threshold,
                    singular=singular[i],
                )
                for i in range(num_features)
            )
        res = zip(*res)
        estimate, se, stat, pvalue, thr_stat, thr_pvalue = (np.array(m) for m in res)

        return estimate, se, stat, pvalue, thr_stat, thr_pvalue
