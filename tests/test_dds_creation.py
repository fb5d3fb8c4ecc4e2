import anndata as ad
import numpy as np
import pandas as pd
import pytest

from pymdseq.default_inference import DefaultInference
from pymdseq.mds import MDSeqStats
from pymdseq.mdds import MDSeqDataSet


@pytest.fixture
def counts_df():
    rng = np.random.default_rng(42)
    return pd.DataFrame(
        rng.negative_binomial(5, 5 / (5 + 50), size=(8, 4)),
        index=[f"sample{i + 1}" for i in range(8)],
        columns=[f"gene{j + 1}" for j in range(4)],
    )


@pytest.fixture
def metadata(counts_df):
    return pd.DataFrame(
        {
            "condition": ["A", "A", "A", "A", "B", "B", "B", "B"],
            "batch": ["X", "Y", "X", "Y", "X", "Y", "X", "Y"],
        },
        index=counts_df.index,
    )


@pytest.mark.parametrize(
    "design",
    [
        "~condition",
        "~batch + condition",
        "~1",
    ],
)
def test_dds_with_formulas(counts_df, metadata, design):
    """Test that inputting formulas works"""
    mdds = MDSeqDataSet(
        counts=counts_df, metadata=metadata, design=design, disp_design="~1"
    )
    assert mdds.obsm["design_matrix"].shape[0] == counts_df.shape[0]
    assert mdds.obsm["disp_design_matrix"].shape == (counts_df.shape[0], 1)


def test_disp_design_defaults_to_mean_design(counts_df, metadata):
    mdds = MDSeqDataSet(counts=counts_df, metadata=metadata, design="~condition")
    assert mdds.disp_design == "~condition"
    assert mdds.obsm["disp_design_matrix"].equals(mdds.obsm["design_matrix"])


def test_dds_with_design_matrix(counts_df, metadata):
    """Test that user-provided design matrices are used as is, and rank deficient
    ones are rejected."""
    design_matrix = pd.DataFrame(
        {
            "intercept": np.ones(8),
            "condition": [0.0] * 4 + [1.0] * 4,
        },
        index=counts_df.index,
    )
    mdds = MDSeqDataSet(counts=counts_df, metadata=metadata, design=design_matrix)
    assert mdds.obsm["design_matrix"].equals(design_matrix)
    assert mdds.formulaic_contrasts is None
    with pytest.raises(ValueError):
        mdds.variables

    # Duplicated columns make the design rank deficient
    design_matrix["condition_bis"] = design_matrix["condition"]
    with pytest.raises(ValueError, match="not full rank"):
        MDSeqDataSet(counts=counts_df, metadata=metadata, design=design_matrix)

    # Wrong number of rows
    with pytest.raises(ValueError):
        MDSeqDataSet(counts=counts_df, metadata=metadata, design=design_matrix[:5])

    # Rows indexed by other samples
    shuffled = design_matrix.drop(columns="condition_bis").iloc[::-1]
    with pytest.raises(ValueError, match="sample barcodes"):
        MDSeqDataSet(counts=counts_df, metadata=metadata, design=shuffled)

    # NaNs in the design
    design_matrix = design_matrix.drop(columns="condition_bis")
    design_matrix.iloc[0, 1] = np.nan
    with pytest.raises(ValueError, match="NaNs"):
        MDSeqDataSet(counts=counts_df, metadata=metadata, design=design_matrix)

    # Neither a formula nor a DataFrame
    with pytest.raises(ValueError):
        MDSeqDataSet(counts=counts_df, metadata=metadata, design=["condition"])


def test_negative_counts(counts_df, metadata):
    counts_df.iloc[0, 0] = -1
    with pytest.raises(ValueError, match="non-negative"):
        MDSeqDataSet(counts=counts_df, metadata=metadata)


def test_non_integer_counts(counts_df, metadata):
    counts_df = counts_df.astype(float)
    counts_df.iloc[0, 0] = 1.5
    with pytest.raises(ValueError, match="integers"):
        MDSeqDataSet(counts=counts_df, metadata=metadata)


def test_nan_counts(counts_df, metadata):
    counts_df = counts_df.astype(float)
    counts_df.iloc[0, 0] = np.nan
    with pytest.raises(ValueError, match="NaNs"):
        MDSeqDataSet(counts=counts_df, metadata=metadata)


def test_non_numeric_counts(counts_df, metadata):
    counts_df = counts_df.astype(object)
    counts_df.iloc[0, 0] = "a"
    with pytest.raises(ValueError, match="numbers"):
        MDSeqDataSet(counts=counts_df, metadata=metadata)


def test_mismatched_indices(counts_df, metadata):
    metadata = metadata.iloc[::-1]
    with pytest.raises(ValueError, match="same sample barcodes"):
        MDSeqDataSet(counts=counts_df, metadata=metadata)


def test_missing_inputs(counts_df):
    with pytest.raises(ValueError):
        MDSeqDataSet(counts=counts_df)


@pytest.mark.parametrize(
    "option",
    [
        {"norm_mode": "quantile"},
        {"size_factors_fit_type": "tmm"},
        {"outlier_policy": "cooks"},
        {"max_outlier_fraction": 1.0},
        {"maxiter": 0},
        {"zi_maxiter": 0},
    ],
)
def test_invalid_options(counts_df, metadata, option):
    with pytest.raises(ValueError):
        MDSeqDataSet(counts=counts_df, metadata=metadata, **option)


def test_offsets(counts_df, metadata):
    """Sample-wise offsets are broadcast to every feature, and offsets of the wrong
    shape are rejected."""
    sample_offsets = np.linspace(-0.2, 0.2, 8)
    mdds = MDSeqDataSet(counts=counts_df, metadata=metadata, offsets=sample_offsets)
    assert mdds.layers["offsets"].shape == counts_df.shape
    np.testing.assert_array_equal(mdds.layers["offsets"][:, 2], sample_offsets)

    with pytest.raises(ValueError):
        MDSeqDataSet(counts=counts_df, metadata=metadata, offsets=np.zeros(5))
    with pytest.raises(ValueError):
        MDSeqDataSet(counts=counts_df, metadata=metadata, offsets=np.zeros((8, 3)))
    with pytest.raises(ValueError, match="finite"):
        MDSeqDataSet(
            counts=counts_df,
            metadata=metadata,
            offsets=np.full(8, np.inf),
        )


def test_anndata_init(counts_df, metadata):
    adata = ad.AnnData(X=counts_df, obs=metadata)
    mdds = MDSeqDataSet(adata=adata)
    np.testing.assert_array_equal(mdds.X, counts_df.values)

    with pytest.warns(UserWarning, match="ignoring counts"):
        MDSeqDataSet(adata=adata, counts=counts_df)


def test_inference_n_cpus(counts_df, metadata):
    inference = DefaultInference(n_cpus=1)
    mdds = MDSeqDataSet(
        counts=counts_df, metadata=metadata, inference=inference, n_cpus=2
    )
    assert mdds.inference.n_cpus == 2


@pytest.mark.filterwarnings("ignore::UserWarning")
def test_stats_invalid_contrasts(counts_df, metadata):
    mdds = MDSeqDataSet(
        counts=counts_df,
        metadata=metadata,
        remove_outliers=False,
        n_cpus=1,
        quiet=True,
    )
    mdds.mdseq()

    with pytest.raises(ValueError):
        MDSeqStats(mdds, contrast=np.array([0.0, 1.0, 0.0]), quiet=True)
    with pytest.raises(ValueError):
        MDSeqStats(mdds, contrast=["condition", "B"], quiet=True)
    with pytest.raises(ValueError):
        MDSeqStats(mdds, contrast=["condition", "B", "A"], lfc_threshold=-1.0)

    ms = MDSeqStats(mdds, contrast=["condition", "B", "A"], quiet=True)
    with pytest.raises(ValueError):
        ms.summary(lfc_threshold=-0.5)
