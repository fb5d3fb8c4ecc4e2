import anndata as ad
import numpy as np
import pandas as pd
import pytest

from pymdseq.default_inference import DefaultInference
from pymdseq.mds import MDSeqStats
from pymdseq.mds import pairwise_comparisons
from pymdseq.mdds import MDSeqDataSet
from pymdseq.preprocessing import filter_counts
from pymdseq.preprocessing import poscounts_norm
from pymdseq.preprocessing import rle_norm
from pymdseq.preprocessing import rle_norm_fit
from pymdseq.preprocessing import rle_norm_transform
from pymdseq.preprocessing import upper_quartile_norm


def simulate_counts(n_per_level=8, n_features=20, levels=("A", "B"), seed=42):
    """Negative binomial counts, with a mean change in the first five features
    and a dispersion change in the next five ones.
    """
    rng = np.random.default_rng(seed)
    n_samples = n_per_level * len(levels)
    condition = np.repeat(levels, n_per_level)
    in_b = condition == "B"
    size_factors = rng.uniform(0.7, 1.4, size=n_samples)

    base_means = rng.uniform(50, 500, size=n_features)
    mu = np.outer(size_factors, base_means)
    alpha = np.full((n_samples, n_features), 0.05)
    mu[in_b, :5] *= 8
    alpha[in_b, 5:10] = 1.0

    size = 1 / alpha
    counts = rng.negative_binomial(size, size / (size + mu))
    samples = [f"sample{i + 1}" for i in range(n_samples)]
    counts_df = pd.DataFrame(
        counts,
        index=samples,
        columns=[f"gene{j + 1}" for j in range(n_features)],
    )
    metadata = pd.DataFrame({"condition": condition}, index=samples)
    return counts_df, metadata


@pytest.fixture
def counts_df():
    return simulate_counts()[0]


@pytest.fixture
def metadata():
    return simulate_counts()[1]


@pytest.fixture
def fitted_mdds(counts_df, metadata):
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        design="~condition",
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()
    return mdds


def test_size_factors_ratio(counts_df, metadata):
    mdds = MDSeqDataSet(counts=counts_df, metadata=metadata, quiet=True)
    mdds.fit_size_factors()

    _, size_factors = rle_norm(counts_df.values)
    np.testing.assert_allclose(mdds.obs["size_factors"], size_factors)
    assert mdds.layers["normed_counts"].shape == counts_df.shape


@pytest.mark.parametrize("fit_type", ["poscounts", "upperquartile"])
def test_size_factors_alternatives(counts_df, metadata, fit_type):
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        size_factors_fit_type=fit_type,
        quiet=True,
    )
    mdds.fit_size_factors()

    assert (mdds.obs["size_factors"] > 0).all()
    size_factors = mdds.obs["size_factors"].to_numpy()
    np.testing.assert_allclose(np.exp(np.log(size_factors).mean()), 1.0)


def test_mdseq_pipeline(fitted_mdds):
    mdds = fitted_mdds

    assert mdds.varm["beta"].shape == (20, 2)
    assert mdds.varm["gamma"].shape == (20, 2)
    assert list(mdds.varm["beta"].columns) == list(
        mdds.obsm["design_matrix"].columns
    )
    assert mdds.information.shape == (20, 4, 4)
    assert (mdds.var["outlier_status"] >= 0).all()
    assert mdds.layers["cleaned_counts"].shape == mdds.X.shape

    table = mdds.fit_table()
    assert list(table.index) == list(mdds.var_names)
    assert {"zi_prop", "converged", "singular", "outlier_status"} <= set(table.columns)

    ms = MDSeqStats(mdds, contrast=["condition", "B", "A"], quiet=True)
    ms.summary()
    res = ms.results_df

    # One row per feature, in input order
    assert list(res.index) == list(mdds.var_names)
    tested = res["meanPvalue"].notna()
    assert (res.loc[tested, "meanPadj"] >= res.loc[tested, "meanPvalue"]).all()

    # Mean changes are detected, with the right size and sign
    ok = mdds.var["outlier_status"].to_numpy()[:5] == 0
    assert (res["meanPadj"].iloc[:5][ok] < 0.05).all()
    np.testing.assert_allclose(res["meanLog2FC"].iloc[:5][ok], 3, atol=1)
    # Dispersion changes are detected
    assert res["dispLog2FC"].iloc[5:10].median() > 2


def test_threshold_identity(fitted_mdds):
    """With a null threshold, threshold tests coincide with classical ones."""
    ms = MDSeqStats(fitted_mdds, contrast=["condition", "B", "A"], quiet=True)
    ms.summary()
    res = ms.results_df

    pd.testing.assert_series_equal(
        res["meanThrPvalue"], res["meanPvalue"], check_names=False
    )
    pd.testing.assert_series_equal(
        res["dispThrStat"], res["dispStat"], check_names=False
    )


def test_threshold_tests(fitted_mdds):
    ms = MDSeqStats(
        fitted_mdds, contrast=["condition", "B", "A"], lfc_threshold=1.0, quiet=True
    )
    ms.summary()
    res = ms.results_df
    tested = res["meanPvalue"].notna()

    assert (res.loc[tested, "meanThrPvalue"] >= res.loc[tested, "meanPvalue"]).all()
    assert (res.loc[tested, "meanThrStat"] <= res.loc[tested, "meanStat"]).all()

    # Changing the threshold in summary reruns the tests
    ms.summary(lfc_threshold=0.0)
    pd.testing.assert_series_equal(
        ms.results_df["meanThrPvalue"], ms.results_df["meanPvalue"], check_names=False
    )


def test_contrast_vector(fitted_mdds):
    """Numeric contrasts should give the same results as named ones."""
    ms = MDSeqStats(fitted_mdds, contrast=["condition", "B", "A"], quiet=True)
    ms.summary()

    ms_vector = MDSeqStats(
        fitted_mdds,
        contrast=np.array([0.0, 1.0]),
        disp_contrast=np.array([0.0, 1.0]),
        quiet=True,
    )
    ms_vector.summary()

    pd.testing.assert_frame_equal(ms.results_df, ms_vector.results_df)


def test_no_disp_contrast(counts_df, metadata):
    """Without a dispersion comparison, dispersion tests are NaN."""
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        disp_design="~1",
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()
    ms = MDSeqStats(mdds, contrast=["condition", "B", "A"], quiet=True)
    ms.summary()

    assert ms.disp_contrast_vector is None
    assert ms.results_df["dispPvalue"].isna().all()
    assert ms.results_df["meanPvalue"].notna().all()
    assert "outlierStatus" not in ms.results_df.columns


def test_n_cpus_ordering(counts_df, metadata):
    """Results should not depend on the number of workers."""
    results = []
    for n_cpus in [1, 2]:
        mdds = MDSeqDataSet(
            counts=counts_df,
            metadata=metadata,
            inference=DefaultInference(n_cpus=n_cpus, batch_size=3),
            quiet=True,
        )
        mdds.mdseq()
        ms = MDSeqStats(mdds, contrast=["condition", "B", "A"], quiet=True)
        ms.summary()
        results.append(ms.results_df)

    pd.testing.assert_frame_equal(results[0], results[1])


def test_end_to_end_zero_group():
    """A feature with an all-zero group shows a strong mean effect."""
    samples = [f"sample{i + 1}" for i in range(8)]
    counts_df = pd.DataFrame(
        {"gene1": [0, 0, 0, 0, 50, 52, 48, 51]}, index=samples
    )
    metadata = pd.DataFrame({"group": ["A"] * 4 + ["B"] * 4}, index=samples)

    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        design="~group",
        disp_design="~1",
        norm_mode="none",
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()
    ms = MDSeqStats(mdds, contrast=["group", "B", "A"], quiet=True)
    ms.summary()
    res = ms.results_df.loc["gene1"]

    assert res["converged"]
    assert not res["singular"]
    assert res["meanLog2FC"] > 5
    assert res["meanPvalue"] < 1e-3


def test_end_to_end_zero_group_disp_design():
    """With the default group-wise dispersion, the all-zero group has its
    dispersion on max_disp. The mean effect is still detected and the dispersion
    test is skipped.
    """
    samples = [f"sample{i + 1}" for i in range(8)]
    counts_df = pd.DataFrame(
        {"gene1": [0, 0, 0, 0, 50, 52, 48, 51]}, index=samples
    )
    metadata = pd.DataFrame({"group": ["A"] * 4 + ["B"] * 4}, index=samples)

    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        design="~group",
        norm_mode="none",
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()
    ms = MDSeqStats(mdds, contrast=["group", "B", "A"], quiet=True)
    ms.summary()
    res = ms.results_df.loc["gene1"]

    assert res["converged"]
    assert not res["singular"]
    assert res["dispBounded"]
    # The dispersion of the all-zero group is capped by max(max_disp, n_samples)
    gamma = mdds.varm["gamma"].loc["gene1"].to_numpy()
    alpha = np.exp(mdds.obsm["disp_design_matrix"].to_numpy() @ gamma)
    assert alpha.max() <= mdds.max_disp * (1 + 1e-6)
    assert res["meanLog2FC"] > 5
    assert res["meanPvalue"] < 0.01
    assert np.isnan(res["dispPvalue"])
    assert np.isnan(res["dispThrPvalue"])


def test_end_to_end_zero_inflated():
    """The zeros of the all-zero group are explained by the negative binomial
    component, so no zero inflation is detected and the mean effect remains.
    """
    samples = [f"sample{i + 1}" for i in range(8)]
    counts_df = pd.DataFrame(
        {"gene1": [0, 0, 0, 0, 50, 52, 48, 51]}, index=samples
    )
    metadata = pd.DataFrame({"group": ["A"] * 4 + ["B"] * 4}, index=samples)

    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        design="~group",
        zero_inflated=True,
        norm_mode="none",
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()
    ms = MDSeqStats(mdds, contrast=["group", "B", "A"], quiet=True)
    ms.summary()
    res = ms.results_df.loc["gene1"]

    assert res["converged"]
    assert not res["singular"]
    assert res["ziProp"] < 0.01
    assert res["ziPvalue"] > 0.05
    assert not res["zeroInflation"]
    assert res["meanLog2FC"] > 5
    assert res["meanPvalue"] < 0.01
    assert res["dispBounded"]


@pytest.mark.filterwarnings("ignore::UserWarning")
def test_maxiter_one():
    """Fitting with a single iteration is not converged, and reproducible."""
    samples = [f"sample{i + 1}" for i in range(8)]
    counts_df = pd.DataFrame(
        {"gene1": [0, 0, 0, 0, 50, 52, 48, 51]}, index=samples
    )
    metadata = pd.DataFrame({"group": ["A"] * 4 + ["B"] * 4}, index=samples)

    tables = []
    for _ in range(2):
        mdds = MDSeqDataSet(
            counts=counts_df,
            metadata=metadata,
            design="~group",
            disp_design="~1",
            norm_mode="none",
            remove_outliers=False,
            maxiter=1,
            n_cpus=1,
            quiet=True,
        )
        mdds.mdseq()
        tables.append(mdds.fit_table())

    assert not tables[0].loc["gene1", "converged"]
    pd.testing.assert_frame_equal(tables[0], tables[1])


def test_zero_inflated_pipeline(counts_df, metadata):
    counts_df = counts_df.copy()
    # Structural zeros in a few features
    counts_df.iloc[::3, :4] = 0

    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        zero_inflated=True,
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()

    zi_prop = mdds.var["zi_prop"].to_numpy()
    assert ((zi_prop >= 0) & (zi_prop <= 1)).all()
    assert (zi_prop[:4] > 0.1).all()
    assert (mdds.var["zi_pvalue"].to_numpy()[:4] < 0.05).all()


def test_user_offsets(counts_df, metadata):
    """Log size factors as user offsets should match the default normalization."""
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()

    mdds_offsets = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        offsets=np.log(mdds.obs["size_factors"].to_numpy()),
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds_offsets.mdseq()

    assert "size_factors" not in mdds_offsets.obs
    pd.testing.assert_frame_equal(mdds.varm["beta"], mdds_offsets.varm["beta"])


def test_rescale_mode(counts_df, metadata):
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        norm_mode="rescale",
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()

    assert np.isfinite(mdds.varm["beta"].values).all()
    # Rescaled counts are fitted without offsets, so intercepts match normed means
    np.testing.assert_allclose(
        np.exp(mdds.varm["beta"]["Intercept"]),
        np.round(mdds.layers["normed_counts"])[:8].mean(0),
        rtol=1e-3,
    )


def test_cleaned_counts(fitted_mdds):
    cleaned = fitted_mdds.cleaned_counts()
    keep = (fitted_mdds.var["outlier_status"] == 0).to_numpy()

    assert cleaned.shape == (fitted_mdds.n_obs, keep.sum())
    assert list(cleaned.columns) == list(fitted_mdds.var_names[keep])
    n_outliers = fitted_mdds.var["n_outliers"].to_numpy()
    assert cleaned.isna().sum().sum() == n_outliers[keep].sum()


def test_pairwise_comparisons():
    counts_df, metadata = simulate_counts(n_per_level=5, levels=("A", "B", "C"))
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        design="~condition",
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()

    results = pairwise_comparisons(mdds, "condition", quiet=True)

    assert set(results) == {"B_vs_A", "C_vs_A", "C_vs_B"}
    for res in results.values():
        assert list(res.index) == list(mdds.var_names)
    # Both comparisons to the mean-shifted level agree in sign
    assert (results["B_vs_A"]["meanLog2FC"].iloc[:5] > 0).all()
    assert (results["C_vs_B"]["meanLog2FC"].iloc[:5] < 0).all()


def test_anndata_init(counts_df, metadata):
    """Test initialization from an AnnData object."""
    adata = ad.AnnData(X=counts_df.values, obs=metadata)
    adata.var_names = counts_df.columns

    mdds = MDSeqDataSet(adata=adata, remove_outliers=False, n_cpus=1, quiet=True)
    mdds.mdseq()

    mdds_df = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds_df.mdseq()

    pd.testing.assert_frame_equal(mdds.varm["beta"], mdds_df.varm["beta"])
    pd.testing.assert_frame_equal(mdds.varm["gamma"], mdds_df.varm["gamma"])


def test_design_matrix_init(counts_df, metadata):
    """A design matrix should be usable in place of a formula."""
    design_matrix = pd.DataFrame(
        {
            "Intercept": np.ones(len(metadata)),
            "condition[T.B]": (metadata["condition"] == "B").astype(float),
        },
        index=metadata.index,
    )
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        design=design_matrix,
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()

    mdds_formula = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds_formula.mdseq()

    np.testing.assert_allclose(
        mdds.varm["beta"].values, mdds_formula.varm["beta"].values
    )
    with pytest.raises(ValueError):
        mdds.contrast("condition", "A", "B")


def test_rle_norm_fit_transform(counts_df):
    logmeans, filtered_features = rle_norm_fit(counts_df[:8])
    normed_counts, size_factors = rle_norm_transform(
        counts_df[8:].values, logmeans, filtered_features
    )

    assert logmeans.shape == (20,)
    assert size_factors.shape == (8,)
    assert normed_counts.shape == (8, 20)


def test_rle_norm_scaling():
    counts = np.array([[10, 20, 30], [20, 40, 60], [5, 10, 15]])
    normed_counts, size_factors = rle_norm(counts)

    np.testing.assert_allclose(size_factors / size_factors[0], [1, 2, 0.5])
    np.testing.assert_allclose(normed_counts[0], normed_counts[1])


def test_other_norms_scaling():
    counts = np.array([[0, 10, 20, 30], [0, 20, 40, 60], [4, 5, 10, 15]])
    _, uq_factors = upper_quartile_norm(counts)
    _, pos_factors = poscounts_norm(counts)

    np.testing.assert_allclose(uq_factors[1] / uq_factors[0], 2)
    np.testing.assert_allclose(pos_factors[1] / pos_factors[0], 2)


def test_filter_counts(counts_df):
    counts_df = counts_df.copy()
    counts_df["lowly_expressed"] = 0
    counts_df.iloc[0, -1] = 1

    filtered = filter_counts(counts_df, min_cpm=1.0)

    assert "lowly_expressed" not in filtered.columns
    assert filtered.shape[1] == counts_df.shape[1] - 1
