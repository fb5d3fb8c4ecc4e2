import sys
import time
from itertools import combinations

import numpy as np
import pandas as pd

from pymdseq.default_inference import DefaultInference
from pymdseq.inference import Inference
from pymdseq.mdds import MDSeqDataSet
from pymdseq.utils import p_adjust

# Statistics reported for both the mean and the dispersion models, in results_df
# column order.
_TEST_COLUMNS = [
    "log2FC",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
    "thrStat",
    "thrPvalue",
    "thrPadj",
]


class MDSeqStats:
    r"""Tests for differential mean and differential dispersion.

    For a contrast :math:`c` of the fitted coefficients, runs both a classical Wald
    test of :math:`c^t\theta = 0` and a threshold test of
    :math:`\vert c^t\theta \vert \leq \tau`, for the mean and the dispersion models
    separately. P-values are adjusted for multiple testing across features.

    Parameters
    ----------
    mdds : MDSeqDataSet
        MDSeqDataSet for which models have already been fitted.

    contrast : list or ndarray
        Either a list of three strings, in the following format:
        ``['variable_of_interest', 'tested_level', 'ref_level']``, or a numeric
        contrast vector over the columns of the mean design matrix.
        Names must correspond to the metadata data passed to the MDSeqDataSet.
        E.g., ``['condition', 'B', 'A']`` will measure the effect of
        ``condition B`` compared to ``condition A``.

    disp_contrast : list or ndarray, optional
        Contrast of the dispersion model, in the same formats as ``contrast``. If
        ``None`` and ``contrast`` is a list whose variable is part of the dispersion
        design, the same comparison is used. Otherwise, dispersion tests are skipped
        and their results are NaN. (default: ``None``).

    alpha : float
        Significance level, used to report zero inflation. (default: ``0.05``).

    lfc_threshold : float
        Threshold :math:`\tau` of the threshold tests, in log2 scale.
        (default: ``0``).

    p_adjust_method : str
        Multiple testing correction, any method accepted by
        ``statsmodels.stats.multitest.multipletests``. (default: ``"fdr_bh"``).

    exclude_failed : bool
        Whether to exclude features whose outlier detection or refit failed from
        testing. Their statistics are NaN. (default: ``True``).

    inference : Inference
        Implementation of inference routines object instance.
        (default:
        :class:`DefaultInference <pymdseq.default_inference.DefaultInference>`).

    quiet : bool
        Suppress status updates. (default: ``False``).

    Attributes
    ----------
    contrast_vector : ndarray
        Contrast over the stacked mean and dispersion coefficients, for the mean test.

    disp_contrast_vector : ndarray or None
        Contrast over the stacked coefficients, for the dispersion test.

    results_df : pandas.DataFrame
        Results of the tests, one row per feature.
    """

    def __init__(
        self,
        mdds: MDSeqDataSet,
        contrast: list[str] | np.ndarray,
        disp_contrast: list[str] | np.ndarray | None = None,
        alpha: float = 0.05,
        lfc_threshold: float = 0.0,
        p_adjust_method: str = "fdr_bh",
        exclude_failed: bool = True,
        inference: Inference | None = None,
        quiet: bool = False,
    ) -> None:
        assert (
            "beta" in mdds.varm
        ), "Please provide a fitted MDSeqDataSet by first running the `mdseq` method."

        self.mdds = mdds
        self.alpha = alpha
        if lfc_threshold < 0:
            raise ValueError(
                f"lfc_threshold should be non-negative (got {lfc_threshold})."
            )
        self.lfc_threshold = lfc_threshold
        self.p_adjust_method = p_adjust_method
        self.exclude_failed = exclude_failed
        self.quiet = quiet

        self.num_vars = self.mdds.obsm["design_matrix"].shape[1]
        self.num_disp_vars = self.mdds.obsm["disp_design_matrix"].shape[1]

        if contrast is None:
            raise ValueError('The "contrast" argument must be provided.')
        self.contrast = contrast
        self.contrast_vector = self._build_contrast_vector(contrast, "mean")

        if disp_contrast is None and not isinstance(contrast, np.ndarray):
            if contrast[0] in self._disp_variables():
                disp_contrast = contrast
        self.disp_contrast = disp_contrast
        self.disp_contrast_vector = (
            None
            if disp_contrast is None
            else self._build_contrast_vector(disp_contrast, "disp")
        )

        # Initialize the inference object.
        self.inference = inference or DefaultInference()

    def summary(self, **kwargs) -> None:
        """Run the statistical analysis.

        The results are stored in the ``results_df`` attribute.

        Parameters
        ----------
        **kwargs
            Keyword arguments: providing a new value for ``lfc_threshold`` will
            override the corresponding ``MDSeqStats`` attribute.
        """
        lfc_threshold = kwargs.get("lfc_threshold", self.lfc_threshold)
        if lfc_threshold < 0:
            raise ValueError(
                f"lfc_threshold should be non-negative (got {lfc_threshold})."
            )

        if not hasattr(self, "mean_results") or lfc_threshold != self.lfc_threshold:
            self.lfc_threshold = lfc_threshold
            self.run_wald_test()

        # Store the results in a DataFrame, in log2 scale for effects.
        self.results_df = pd.DataFrame(index=self.mdds.var_names)
        var = self.mdds.var
        if "_normed_means" in var:
            self.results_df["baseMean"] = var["_normed_means"]
        for prefix, results in [
            ("mean", self.mean_results),
            ("disp", self.disp_results),
        ]:
            for column in _TEST_COLUMNS:
                self.results_df[prefix + column[0].upper() + column[1:]] = results[
                    column
                ]
        self.results_df["ziProp"] = var["zi_prop"]
        self.results_df["ziPvalue"] = var["zi_pvalue"]
        self.results_df["zeroInflation"] = var["zi_pvalue"] < self.alpha
        self.results_df["converged"] = var["converged"]
        self.results_df["singular"] = var["singular"]
        self.results_df["dispBounded"] = var["disp_bounded"]
        if "outlier_status" in var:
            self.results_df["outlierStatus"] = var["outlier_status"]

        if not self.quiet:
            if isinstance(self.contrast, np.ndarray):
                # The contrast vector was directly provided
                print(
                    f"Log2 fold change & Wald test p-value, contrast vector: "
                    f"{self.contrast}"
                )
            else:
                print(
                    f"Log2 fold change & Wald test p-value: "
                    f"{self.contrast[0]} {self.contrast[1]} vs {self.contrast[2]}"
                )
            print(self.results_df)

    def run_wald_test(self) -> None:
        """Perform classical and threshold Wald tests.

        Get feature-wise p-values for differential mean and differential dispersion,
        and adjust them for multiple testing. Dispersion tests are skipped for
        features whose dispersion estimate sits on ``min_disp`` or ``max_disp``.
        """
        coefs = np.hstack(
            [self.mdds.varm["beta"].values, self.mdds.varm["gamma"].values]
        )
        information = self.mdds.information
        excluded = self._excluded_features()

        if not self.quiet:
            print("Running Wald tests...", file=sys.stderr)
        start = time.time()
        self.mean_results = self._test(
            coefs, information, self.contrast_vector, excluded
        )
        if self.disp_contrast_vector is not None:
            disp_bounded = self.mdds.var["disp_bounded"].to_numpy(dtype=bool)
            self.disp_results = self._test(
                coefs,
                information,
                self.disp_contrast_vector,
                excluded | disp_bounded,
            )
        else:
            self.disp_results = pd.DataFrame(
                np.nan, index=self.mdds.var_names, columns=_TEST_COLUMNS
            )
        end = time.time()
        if not self.quiet:
            print(f"... done in {end-start:.2f} seconds.\n", file=sys.stderr)

    def _test(
        self,
        coefs: np.ndarray,
        information: np.ndarray,
        contrast_vector: np.ndarray,
        excluded: np.ndarray,
    ) -> pd.DataFrame:
        """Test one contrast for every feature and adjust p-values."""
        estimate, se, stat, pvalue, thr_stat, thr_pvalue = self.inference.wald_test(
            coefs=coefs,
            information=information,
            contrast=contrast_vector,
            lfc_threshold=np.log(2) * self.lfc_threshold,  # Convert log2 to natural log
            singular=excluded,
        )
        results = pd.DataFrame(index=self.mdds.var_names)
        results["log2FC"] = estimate / np.log(2)
        results["lfcSE"] = se / np.log(2)
        results["stat"] = stat
        results["pvalue"] = pvalue
        results["padj"] = p_adjust(pvalue, method=self.p_adjust_method)
        results["thrStat"] = thr_stat
        results["thrPvalue"] = thr_pvalue
        results["thrPadj"] = p_adjust(thr_pvalue, method=self.p_adjust_method)
        return results

    def _excluded_features(self) -> np.ndarray:
        """Mask of features whose statistics should not be computed."""
        excluded = self.mdds.var["singular"].to_numpy(dtype=bool).copy()
        if self.exclude_failed and "outlier_status" in self.mdds.var:
            excluded |= self.mdds.var["outlier_status"].to_numpy() != 0
        return excluded

    def _disp_variables(self) -> list[str]:
        try:
            return list(self.mdds.disp_variables)
        except (ValueError, KeyError):
            return []

    def _build_contrast_vector(self, contrast: list[str] | np.ndarray, which: str):
        """Build a contrast over the stacked mean and dispersion coefficients.

        Allows to test any pair of levels without refitting models.
        """
        num_target = self.num_vars if which == "mean" else self.num_disp_vars
        if isinstance(contrast, np.ndarray):
            if contrast.shape[0] != num_target:
                raise ValueError(
                    f"The {which} contrast vector must have the same length as the "
                    f"{which} design matrix."
                )
            vector = contrast.astype(float)
        else:
            if len(contrast) != 3:
                raise ValueError(
                    "The contrast should be a list of three strings: "
                    "['variable_of_interest', 'tested_level', 'ref_level']."
                )
            factor, alternative, ref = contrast
            vector = self.mdds.contrast(
                column=factor, baseline=ref, group_to_compare=alternative, which=which
            )

        if which == "mean":
            return np.concatenate([vector, np.zeros(self.num_disp_vars)])
        return np.concatenate([np.zeros(self.num_vars), vector])


def pairwise_comparisons(
    mdds: MDSeqDataSet, factor: str, **kwargs
) -> dict[str, pd.DataFrame]:
    """Test every pair of levels of a factor.

    Parameters
    ----------
    mdds : MDSeqDataSet
        MDSeqDataSet for which models have already been fitted.

    factor : str
        Categorical variable of the design.

    **kwargs
        Keyword arguments passed to :class:`MDSeqStats`.

    Returns
    -------
    dict
        Results tables, keyed by ``"<tested>_vs_<ref>"``. Levels are sorted, and the
        first level of each pair is the reference.
    """
    if factor not in mdds.obs.columns:
        raise ValueError(f"{factor} is not a column of the metadata.")
    levels = sorted(mdds.obs[factor].unique(), key=str)
    results = {}
    for ref, tested in combinations(levels, 2):
        stats = MDSeqStats(mdds, contrast=[factor, tested, ref], **kwargs)
        stats.summary()
        results[f"{tested}_vs_{ref}"] = stats.results_df
    return results
