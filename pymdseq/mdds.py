import sys
import time
import warnings
from typing import Literal

import anndata as ad  # type: ignore
import numpy as np
import pandas as pd
from formulaic_contrasts import FormulaicContrasts

from pymdseq.default_inference import DefaultInference
from pymdseq.inference import Inference
from pymdseq.preprocessing import poscounts_norm
from pymdseq.preprocessing import rle_norm_fit
from pymdseq.preprocessing import rle_norm_transform
from pymdseq.preprocessing import upper_quartile_norm
from pymdseq.utils import FeatureFit
from pymdseq.utils import FitStrategy
from pymdseq.utils import OutlierReport
from pymdseq.utils import check_design
from pymdseq.utils import test_valid_counts

# Ignore AnnData's FutureWarning about implicit data conversion.
warnings.simplefilter("ignore", FutureWarning)


class MDSeqDataSet(ad.AnnData):
    r"""A class to jointly model the mean and dispersion of count data.

    The MDSeqDataSet extends the `AnnData class
    <https://anndata.readthedocs.io/en/latest/generated/anndata.AnnData.html#anndata.AnnData>`_.
    As such, it implements the same methods and attributes, in addition to those that
    are specific to pymdseq.

    Each feature is modelled independently by a (zero-inflated) negative binomial
    whose mean and dispersion are both regressed on covariates with log links:

    .. math::
        \log \mu_{ij} = X_i \beta_j + o_{ij}, \qquad \log \alpha_{ij} = Z_i \gamma_j,

    with variance :math:`\mu + \alpha\mu^2`. Influential observations can be removed
    before the final fit.

    Parameters
    ----------
    adata : anndata.AnnData
        AnnData from which to initialize the MDSeqDataSet. Must have counts ('X') and
        sample metadata ('obs') fields. If ``None``, both ``counts`` and ``metadata``
        arguments must be provided.

    counts : pandas.DataFrame
        Raw counts. One column per feature, rows are indexed by sample barcodes.

    metadata : pandas.DataFrame
        DataFrame containing sample metadata.
        Must be indexed by sample barcodes.

    design : str or pandas.DataFrame
        Mean model design. Can be either a pandas DataFrame representing a design
        matrix, or a formulaic formula in the format ``'x + z'`` or ``'~x+z'``.
        (default: ``'~condition'``).

    disp_design : str or pandas.DataFrame, optional
        Dispersion model design, in the same formats as ``design``. If ``None``, the
        mean model design is used. (default: ``None``).

    zero_inflated : bool
        Whether to model a point mass at zero, estimated by EM. (default: ``False``).

    norm_mode : str
        How size factors enter the model. ``"offset"``: log size factors are offsets
        of the mean model. ``"rescale"``: normalized counts, rounded to integers, are
        fitted without offsets. ``"none"``: raw counts are fitted without offsets.
        Ignored if ``offsets`` are provided. (default: ``"offset"``).

    size_factors_fit_type : str
        The normalization method to use: ``"ratio"``, ``"poscounts"`` or
        ``"upperquartile"``. ``"ratio"``: median-of-ratios. ``"poscounts"``:
        median-of-ratios over positive counts, for sparse data.
        ``"upperquartile"``: 75th percentile of sample counts.
        (default: ``"ratio"``).

    offsets : ndarray or pandas.DataFrame, optional
        User-provided log-scale offsets of the mean model, either one per sample or
        one per sample and feature. (default: ``None``).

    min_mu : float
        Threshold for mean estimates. (default: ``0.5``).

    min_disp : float
        Lower threshold for dispersion parameters. (default: ``1e-8``).

    max_disp : float
        Upper threshold for dispersion parameters.
        Note: The threshold that is actually enforced is max(max_disp, len(counts)).
        (default: ``10``).

    beta_tol : float
        Stopping criterion for Fisher scoring and EM. (default: ``1e-8``).

        .. math:: \vert \ell_t - \ell_{t+1}\vert / (\vert \ell \vert + 0.1) < \beta_{tol}.

    maxiter : int
        Maximum number of Fisher scoring iterations. (default: ``250``).

    zi_maxiter : int
        Maximum number of EM iterations of zero-inflated fits. (default: ``200``).

    remove_outliers : bool
        Whether to flag influential observations and refit without them.
        (default: ``True``).

    outlier_policy : str
        Influence cutoff policy: ``"f"``, ``"chisq"`` or ``"empirical"``.
        (default: ``"f"``).

    outlier_quantile : float
        Quantile used by the ``"f"`` and ``"chisq"`` cutoff policies.
        (default: ``0.99``).

    max_outlier_fraction : float
        Maximum fraction of the observations of a feature that may be flagged.
        (default: ``0.2``).

    n_cpus : int
        Number of cpus to use.  If ``None`` and if ``inference`` is not provided, all
        available cpus will be used by the ``DefaultInference``. If both are specified
        (i.e., ``n_cpus`` and ``inference`` are not ``None``), it will try to override
        the ``n_cpus`` attribute of the ``inference`` object. (default: ``None``).

    inference : Inference
        Implementation of inference routines object instance.
        (default:
        :class:`DefaultInference <pymdseq.default_inference.DefaultInference>`).

    quiet : bool
        Suppress status updates during fit. (default: ``False``).

    Attributes
    ----------
    X
        A ‘number of samples’ x ‘number of features’ count data matrix.

    obs
        Key-indexed one-dimensional observations annotation of length 'number of
        samples". Used to store design factors and "size_factors".

    obsm
        Key-indexed multi-dimensional observations annotation of length
        ‘number of samples’. Stores "design_matrix" and "disp_design_matrix".

    var
        Key-indexed one-dimensional feature annotation of length ‘number of
        features’. Stores per-feature diagnostics such as "zi_prop", "converged",
        "singular", "disp_bounded", "outlier_status" and "non_zero" (mask of
        features that have non-uniformly zero counts).

    varm
        Key-indexed multi-dimensional feature annotation of length ‘number of
        features’. Stores "beta", "gamma" and "information".

    layers
        Key-indexed multi-dimensional arrays aligned to dimensions of `X`, e.g.
        "cleaned_counts" and "influence".

    strategy : FitStrategy
        Fitting strategy, selected once from ``zero_inflated``.
    """

    def __init__(
        self,
        *,
        adata: ad.AnnData | None = None,
        counts: pd.DataFrame | None = None,
        metadata: pd.DataFrame | None = None,
        design: str | pd.DataFrame = "~condition",
        disp_design: str | pd.DataFrame | None = None,
        zero_inflated: bool = False,
        norm_mode: Literal["offset", "rescale", "none"] = "offset",
        size_factors_fit_type: Literal["ratio", "poscounts", "upperquartile"] = "ratio",
        offsets: np.ndarray | pd.DataFrame | None = None,
        min_mu: float = 0.5,
        min_disp: float = 1e-8,
        max_disp: float = 10.0,
        beta_tol: float = 1e-8,
        maxiter: int = 250,
        zi_maxiter: int = 200,
        remove_outliers: bool = True,
        outlier_policy: Literal["f", "chisq", "empirical"] = "f",
        outlier_quantile: float = 0.99,
        max_outlier_fraction: float = 0.2,
        n_cpus: int | None = None,
        inference: Inference | None = None,
        quiet: bool = False,
    ) -> None:
        # Initialize the AnnData part
        if adata is not None:
            if counts is not None:
                warnings.warn(
                    "adata was provided; ignoring counts.", UserWarning, stacklevel=2
                )
            if metadata is not None:
                warnings.warn(
                    "adata was provided; ignoring metadata.", UserWarning, stacklevel=2
                )
            # Test counts before going further
            test_valid_counts(adata.X)
            # Copy fields from original AnnData
            self.__dict__.update(adata.__dict__)
            # Cast counts to ints to avoid any issue
            self.X = adata.X.astype(int)
        elif counts is not None and metadata is not None:
            # Test counts before going further
            test_valid_counts(counts)
            if not counts.index.equals(metadata.index):
                raise ValueError(
                    "The count matrix and the metadata should be indexed by the same "
                    "sample barcodes."
                )
            super().__init__(X=counts.astype(int), obs=metadata)
        else:
            raise ValueError(
                "Either adata or both counts and metadata arguments must be provided."
            )

        if norm_mode not in ("offset", "rescale", "none"):
            raise ValueError(
                f"norm_mode should be 'offset', 'rescale' or 'none', got {norm_mode}."
            )
        if size_factors_fit_type not in ("ratio", "poscounts", "upperquartile"):
            raise ValueError(
                "size_factors_fit_type should be 'ratio', 'poscounts' or "
                f"'upperquartile', got {size_factors_fit_type}."
            )
        if outlier_policy not in ("f", "chisq", "empirical"):
            raise ValueError(
                "outlier_policy should be 'f', 'chisq' or 'empirical', "
                f"got {outlier_policy}."
            )
        if not 0 <= max_outlier_fraction < 1:
            raise ValueError(
                f"max_outlier_fraction should be in [0, 1), got {max_outlier_fraction}."
            )
        if maxiter < 1 or zi_maxiter < 1:
            raise ValueError("maxiter and zi_maxiter should be positive integers.")

        self.design = design
        self.disp_design = design if disp_design is None else disp_design

        self.obsm["design_matrix"], self.formulaic_contrasts = self._build_design(
            self.design
        )
        (
            self.obsm["disp_design_matrix"],
            self.disp_formulaic_contrasts,
        ) = self._build_design(self.disp_design)

        check_design(self.obsm["design_matrix"], self.n_obs)
        check_design(self.obsm["disp_design_matrix"], self.n_obs)

        if offsets is not None:
            self.layers["offsets"] = self._check_offsets(offsets)

        self.strategy = (
            FitStrategy.ZERO_INFLATED if zero_inflated else FitStrategy.PLAIN
        )
        self.norm_mode = norm_mode
        self.size_factors_fit_type = size_factors_fit_type
        self.min_mu = min_mu
        self.min_disp = min_disp
        self.max_disp = np.maximum(max_disp, self.n_obs)
        self.beta_tol = beta_tol
        self.maxiter = maxiter
        self.zi_maxiter = zi_maxiter
        self.remove_outliers = remove_outliers
        self.outlier_policy = outlier_policy
        self.outlier_quantile = outlier_quantile
        self.max_outlier_fraction = max_outlier_fraction
        self.quiet = quiet

        if inference:
            if hasattr(inference, "n_cpus"):
                if n_cpus:
                    inference.n_cpus = n_cpus
            else:
                warnings.warn(
                    "The provided inference object does not have an n_cpus "
                    "attribute, cannot override `n_cpus`.",
                    UserWarning,
                    stacklevel=2,
                )
        # Initialize the inference object.
        self.inference = inference or DefaultInference(n_cpus=n_cpus)

    @property
    def variables(self):
        """Get the names of the variables used in the mean model definition."""
        if self.formulaic_contrasts is None:
            raise ValueError(
                """Retrieving variables is only possible if the model was initialized
                using a formula."""
            )
        return self.formulaic_contrasts.variables

    @property
    def disp_variables(self):
        """Get the names of the variables used in the dispersion model definition."""
        if self.disp_formulaic_contrasts is None:
            raise ValueError(
                """Retrieving variables is only possible if the model was initialized
                using a formula."""
            )
        return self.disp_formulaic_contrasts.variables

    @property
    def information(self) -> np.ndarray:
        """Information matrices of the fitted coefficients, one per feature."""
        if "information" not in self.varm:
            raise AttributeError(
                "Models have not been fitted yet. Please run the `mdseq` method."
            )
        num_coefs = (
            self.obsm["design_matrix"].shape[1]
            + self.obsm["disp_design_matrix"].shape[1]
        )
        return self.varm["information"].reshape(self.n_vars, num_coefs, num_coefs)

    def mdseq(self) -> None:
        """Fit mean-dispersion models to every feature.

        Wrapper for the whole fitting pipeline: size factors (if needed), optional
        outlier detection and removal, and final fits with the selected strategy.
        """
        if "offsets" not in self.layers and self.norm_mode != "none":
            # Compute normalization factors
            self.fit_size_factors()

        if self.remove_outliers:
            # Flag influential observations, and refit without them
            self.detect_outliers()
        else:
            self.fit_models()

    def contrast(self, *args, which: Literal["mean", "disp"] = "mean", **kwargs):
        """Get a contrast for a simple pairwise comparison.

        Parameters
        ----------
        *args
            Positional arguments of ``FormulaicContrasts.contrast``, i.e. ``column``,
            ``baseline`` and ``group_to_compare``.

        which : str
            Whether to build the contrast for the mean (``"mean"``) or the dispersion
            (``"disp"``) design. (default: ``"mean"``).

        **kwargs
            Keyword arguments of ``FormulaicContrasts.contrast``.

        Returns
        -------
        ndarray
            A contrast vector that aligns to the columns of the design matrix.
        """
        contrasts = (
            self.formulaic_contrasts if which == "mean" else self.disp_formulaic_contrasts
        )
        key = "design_matrix" if which == "mean" else "disp_design_matrix"
        if contrasts is None:
            raise ValueError(
                "Contrasts can only be built from a design provided as a formula. "
                "Please provide a numeric contrast vector instead."
            )
        vector = contrasts.contrast(*args, **kwargs)
        if isinstance(vector, pd.Series):
            return vector.reindex(self.obsm[key].columns).to_numpy(dtype=float)
        return np.asarray(vector, dtype=float)

    def fit_size_factors(
        self,
        fit_type: Literal["ratio", "poscounts", "upperquartile"] | None = None,
    ) -> None:
        """Fit sample-wise normalization (size) factors.

        Uses the median-of-ratios method: see :func:`pymdseq.preprocessing.rle_norm`,
        unless each feature has at least one sample with zero counts, in which case it
        switches to the ``poscounts`` method.

        Parameters
        ----------
        fit_type : str
            The normalization method to use: "ratio", "poscounts" or "upperquartile".
            If ``None``, ``size_factors_fit_type`` is used. (default: ``None``).
        """
        if fit_type is None:
            fit_type = self.size_factors_fit_type
        if not self.quiet:
            print("Fitting size factors...", file=sys.stderr)

        start = time.time()
        if fit_type == "upperquartile":
            normed_counts, size_factors = upper_quartile_norm(self.X)
        elif fit_type == "poscounts":
            normed_counts, size_factors = poscounts_norm(self.X)
        elif (self.X == 0).any(0).all():
            # There is at least a zero for each feature
            warnings.warn(
                "Every feature contains at least one zero, "
                "cannot compute log geometric means. Switching to poscounts mode.",
                UserWarning,
                stacklevel=2,
            )
            normed_counts, size_factors = poscounts_norm(self.X)
        else:
            logmeans, filtered_features = rle_norm_fit(self.X)
            normed_counts, size_factors = rle_norm_transform(
                self.X, logmeans, filtered_features
            )
        end = time.time()

        self.obs["size_factors"] = size_factors
        self.layers["normed_counts"] = normed_counts
        self.var["_normed_means"] = self.layers["normed_counts"].mean(0)

        if not self.quiet:
            print(f"... done in {end - start:.2f} seconds.\n", file=sys.stderr)

    def fit_models(self) -> None:
        """Fit mean-dispersion models to every feature, on the current counts.

        Uses the cleaned counts if outliers were removed, the raw counts otherwise.
        Features whose counts are all zero get NaN coefficients.
        """
        counts, offsets = self._fit_inputs()
        if "cleaned_counts" in self.layers:
            counts = self.layers["cleaned_counts"]
        self._check_all_zeros()

        if not self.quiet:
            print("Fitting mean-dispersion models...", file=sys.stderr)
        start = time.time()
        fits = self.inference.fit_md_glm(
            counts=counts,
            design_matrix=self.obsm["design_matrix"].values,
            disp_design_matrix=self.obsm["disp_design_matrix"].values,
            offsets=offsets,
            strategy=self.strategy,
            min_mu=self.min_mu,
            min_disp=self.min_disp,
            max_disp=self.max_disp,
            beta_tol=self.beta_tol,
            maxiter=self.maxiter,
            zi_maxiter=self.zi_maxiter,
        )
        end = time.time()

        if not self.quiet:
            print(f"... done in {end - start:.2f} seconds.\n", file=sys.stderr)

        self._store_fits(fits)

    def detect_outliers(self) -> None:
        """Flag influential observations, replace them with NaN and refit.

        For each feature, a reduced fit without zero inflation is used to compute the
        influence of every observation. Observations above the cutoff are removed
        from ``layers["cleaned_counts"]`` and the model is refitted once with the
        selected strategy.
        """
        counts, offsets = self._fit_inputs()
        self._check_all_zeros()

        if not self.quiet:
            print("Detecting outliers and refitting...", file=sys.stderr)
        start = time.time()
        reports = self.inference.detect_outliers(
            counts=counts,
            design_matrix=self.obsm["design_matrix"].values,
            disp_design_matrix=self.obsm["disp_design_matrix"].values,
            offsets=offsets,
            strategy=self.strategy,
            cutoff_policy=self.outlier_policy,
            cutoff_quantile=self.outlier_quantile,
            max_outlier_fraction=self.max_outlier_fraction,
            min_mu=self.min_mu,
            min_disp=self.min_disp,
            max_disp=self.max_disp,
            beta_tol=self.beta_tol,
            maxiter=self.maxiter,
            zi_maxiter=self.zi_maxiter,
        )
        end = time.time()

        if not self.quiet:
            print(f"... done in {end - start:.2f} seconds.\n", file=sys.stderr)

        self._store_reports(reports)
        self._store_fits([report.fit for report in reports])

        if not self.quiet:
            print(
                f"{self.var['n_outliers'].sum()} outliers removed in "
                f"{(self.var['n_outliers'] > 0).sum()} features.",
                file=sys.stderr,
            )

    def fit_table(self) -> pd.DataFrame:
        """Return fitted coefficients and diagnostics as a DataFrame.

        Returns
        -------
        pandas.DataFrame
            One row per feature. Mean and dispersion coefficients (natural log scale)
            are prefixed with ``mean_`` and ``disp_`` respectively.
        """
        if "beta" not in self.varm:
            raise AttributeError(
                "Models have not been fitted yet. Please run the `mdseq` method."
            )
        table = pd.concat(
            [
                self.varm["beta"].add_prefix("mean_"),
                self.varm["gamma"].add_prefix("disp_"),
            ],
            axis=1,
        )
        for key in [
            "zi_prop",
            "zi_stat",
            "zi_pvalue",
            "log_lik",
            "n_iter",
            "converged",
            "singular",
            "disp_bounded",
            "outlier_status",
            "n_outliers",
        ]:
            if key in self.var:
                table[key] = self.var[key]
        return table

    def cleaned_counts(self) -> pd.DataFrame:
        """Return counts with outliers replaced by NaN.

        Features whose outlier detection or refit failed are excluded.

        Returns
        -------
        pandas.DataFrame
            Cleaned counts, one column per successfully processed feature.
        """
        if "cleaned_counts" not in self.layers:
            raise AttributeError(
                "Outliers have not been detected yet. Please run the "
                "`detect_outliers` method."
            )
        keep = (self.var["outlier_status"] == 0).to_numpy()
        return pd.DataFrame(
            self.layers["cleaned_counts"][:, keep],
            index=self.obs_names,
            columns=self.var_names[keep],
        )

    def _build_design(
        self, design: str | pd.DataFrame
    ) -> tuple[pd.DataFrame, FormulaicContrasts | None]:
        """Build a design matrix from a formula, or check a user-provided one."""
        if isinstance(design, str):
            contrasts = FormulaicContrasts(self.obs, design)
            return contrasts.design_matrix, contrasts
        elif isinstance(design, pd.DataFrame):
            if design.shape[0] != self.n_obs:
                raise ValueError(
                    f"The design matrix has {design.shape[0]} rows but the count "
                    f"matrix has {self.n_obs} samples."
                )
            if not design.index.equals(self.obs_names):
                raise ValueError(
                    "The design matrix should be indexed by the same sample barcodes "
                    "as the count matrix."
                )
            return design, None
        raise ValueError(
            "design must be a string representing a formulaic formula,"
            "or a pandas DataFrame."
        )

    def _check_offsets(self, offsets: np.ndarray | pd.DataFrame) -> np.ndarray:
        """Broadcast user-provided offsets to the shape of the count matrix."""
        offsets = np.asarray(offsets, dtype=float)
        if offsets.ndim == 1:
            if offsets.shape[0] != self.n_obs:
                raise ValueError(
                    f"Expected {self.n_obs} sample-wise offsets, got {offsets.shape[0]}."
                )
            offsets = np.repeat(offsets[:, None], self.n_vars, axis=1)
        elif offsets.shape != (self.n_obs, self.n_vars):
            raise ValueError(
                f"Offsets should be of shape ({self.n_obs},) or "
                f"({self.n_obs}, {self.n_vars}), got {offsets.shape}."
            )
        if not np.isfinite(offsets).all():
            raise ValueError("Offsets should be finite.")
        return offsets

    def _fit_inputs(self) -> tuple[np.ndarray, np.ndarray]:
        """Return the counts and offsets passed to the solvers."""
        counts = np.asarray(self.X, dtype=float)
        if "offsets" in self.layers:
            return counts, self.layers["offsets"]

        if self.norm_mode == "none":
            return counts, np.zeros_like(counts)

        # Check that size factors are available. If not, compute them.
        if "size_factors" not in self.obs:
            self.fit_size_factors()

        if self.norm_mode == "rescale":
            normed_counts = np.round(np.asarray(self.layers["normed_counts"]))
            return normed_counts.astype(float), np.zeros_like(counts)
        offsets = np.repeat(
            np.log(self.obs["size_factors"].to_numpy())[:, None], self.n_vars, axis=1
        )
        return counts, offsets

    def _check_all_zeros(self) -> None:
        # Features with all zeroes get failed fits
        self.var["non_zero"] = ~(self.X == 0).all(axis=0)
        n_all_zeros = (~self.var["non_zero"]).sum()
        if n_all_zeros > 0:
            warnings.warn(
                f"{n_all_zeros} features have only zero counts and cannot be fitted. "
                "Their coefficients will be NaN.",
                UserWarning,
                stacklevel=3,
            )

    def _store_fits(self, fits: list[FeatureFit]) -> None:
        """Store coefficients in ``varm`` and per-feature diagnostics in ``var``."""
        self.varm["beta"] = pd.DataFrame(
            np.array([fit.beta for fit in fits]),
            index=self.var_names,
            columns=self.obsm["design_matrix"].columns,
        )
        self.varm["gamma"] = pd.DataFrame(
            np.array([fit.gamma for fit in fits]),
            index=self.var_names,
            columns=self.obsm["disp_design_matrix"].columns,
        )
        self.varm["information"] = np.array(
            [fit.information.ravel() for fit in fits]
        )
        for key in ["zi_prop", "zi_stat", "zi_pvalue", "log_lik"]:
            self.var[key] = np.array([getattr(fit, key) for fit in fits], dtype=float)
        self.var["n_iter"] = np.array([fit.n_iter for fit in fits], dtype=int)
        for key in ["converged", "singular", "disp_bounded"]:
            self.var[key] = np.array([getattr(fit, key) for fit in fits], dtype=bool)

        n_failed = (~self.var["converged"] & self.var["non_zero"]).sum()
        if n_failed > 0:
            warnings.warn(
                f"The fit did not converge for {n_failed} features.",
                UserWarning,
                stacklevel=3,
            )

    def _store_reports(self, reports: list[OutlierReport]) -> None:
        """Store outlier detection results in ``var`` and ``layers``."""
        self.var["outlier_status"] = np.array(
            [report.status for report in reports], dtype=int
        )
        self.var["n_outliers"] = np.array(
            [report.n_outliers for report in reports], dtype=int
        )
        self.var["outlier_cutoff"] = np.array(
            [report.cutoff for report in reports], dtype=float
        )
        self.layers["cleaned_counts"] = np.array(
            [report.cleaned_counts for report in reports]
        ).T
        self.layers["influence"] = np.array([report.influence for report in reports]).T
