import numpy as np
import pandas as pd


def _log_counts(counts: pd.DataFrame | np.ndarray) -> np.ndarray:
    # log(0) = -inf marks features that cannot serve as a reference
    with np.errstate(divide="ignore"):
        return np.log(np.asarray(counts, dtype=float))


def rle_norm(
    counts: pd.DataFrame | np.ndarray,
) -> tuple[pd.DataFrame | np.ndarray, np.ndarray]:
    """Normalize counts with the relative log expression (median of ratios) method.

    The reference sample is the feature-wise geometric mean over samples, and the
    size factor of a sample is its median ratio to the reference. Features with a
    zero count in any sample are left out of the medians.

    Parameters
    ----------
    counts : pandas.DataFrame or ndarray
        Raw counts, samples x features.

    Returns
    -------
    normed_counts : pandas.DataFrame or ndarray
        Counts divided by the size factors, of the same type as ``counts``.

    size_factors : ndarray
        One factor per sample.
    """
    return rle_norm_transform(counts, *rle_norm_fit(counts))


def rle_norm_fit(counts: pd.DataFrame | np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Compute the log geometric means used as reference by :func:`rle_norm`.

    The result can be passed to :func:`rle_norm_transform` to put other samples
    on the same scale.

    Parameters
    ----------
    counts : pandas.DataFrame or ndarray
        Raw counts, samples x features.

    Returns
    -------
    logmeans : ndarray
        Mean log count of each feature.

    filtered_features : ndarray
        Boolean mask of the features with a finite ``logmeans``, i.e. without zeros.
    """
    logmeans = _log_counts(counts).mean(axis=0)
    return logmeans, np.isfinite(logmeans)


def rle_norm_transform(
    counts: pd.DataFrame | np.ndarray,
    logmeans: np.ndarray,
    filtered_features: np.ndarray,
) -> tuple[pd.DataFrame | np.ndarray, np.ndarray]:
    """Normalize counts against reference log geometric means.

    Parameters
    ----------
    counts : pandas.DataFrame or ndarray
        Raw counts, samples x features.

    logmeans : ndarray
        Reference log geometric means, from :func:`rle_norm_fit`.

    filtered_features : ndarray
        Mask of the features used as reference, from :func:`rle_norm_fit`.

    Returns
    -------
    normed_counts : pandas.DataFrame or ndarray
        Counts divided by the size factors.

    size_factors : ndarray
        One factor per sample.
    """
    if not filtered_features.any():
        raise ValueError(
            "Every feature contains at least one zero, cannot compute size factors "
            "with the median of ratios method. Please use 'poscounts' or "
            "'upperquartile' normalization instead."
        )
    log_ratios = (
        _log_counts(counts)[:, filtered_features] - logmeans[filtered_features]
    )
    size_factors = np.exp(np.median(log_ratios, axis=1))
    return counts / size_factors[:, None], size_factors


def poscounts_norm(
    counts: pd.DataFrame | np.ndarray,
) -> tuple[pd.DataFrame | np.ndarray, np.ndarray]:
    """Return normalized counts and size factors from positive counts only.

    Variant of the median of ratios method for sparse data, where few or no
    features have only positive counts: log means are computed over positive
    counts, and ratios of zero counts are ignored.

    Parameters
    ----------
    counts : pandas.DataFrame or ndarray
            Raw counts. One column per feature, one row per sample.

    Returns
    -------
    normed_counts : pandas.DataFrame or ndarray
        Normalized counts.

    size_factors : ndarray
        Sample-wise normalization factors, with a geometric mean of 1.
    """
    values = np.asarray(counts, dtype=float)
    log_counts = np.zeros_like(values)
    np.log(values, out=log_counts, where=values != 0)
    logmeans = log_counts.mean(0)
    usable = (~np.isinf(logmeans)) & (logmeans > 0)

    def size_factor(x):
        mask = np.logical_and(usable, x > 0)
        if not mask.any():
            return np.nan
        return np.exp(np.median(np.log(x[mask]) - logmeans[mask]))

    size_factors = np.apply_along_axis(size_factor, 1, values)
    if np.isnan(size_factors).any():
        raise ValueError(
            "Some samples have no positive counts in features that can be used for "
            "normalization."
        )
    # Normalize size factors to a geometric mean of 1
    size_factors = size_factors / np.exp(np.mean(np.log(size_factors)))
    return counts / size_factors[:, None], size_factors


def upper_quartile_norm(
    counts: pd.DataFrame | np.ndarray,
) -> tuple[pd.DataFrame | np.ndarray, np.ndarray]:
    """Return normalized counts and size factors from the upper quartile method.

    Each sample is scaled by the 75th percentile of its counts over features that
    are not uniformly zero. Size factors are rescaled to a geometric mean of 1.

    Parameters
    ----------
    counts : pandas.DataFrame or ndarray
            Raw counts. One column per feature, one row per sample.

    Returns
    -------
    normed_counts : pandas.DataFrame or ndarray
        Normalized counts.

    size_factors : ndarray
        Sample-wise normalization factors.
    """
    values = np.asarray(counts, dtype=float)
    expressed = ~(values == 0).all(axis=0)
    upper_quartiles = np.quantile(values[:, expressed], 0.75, axis=1)
    if (upper_quartiles <= 0).any():
        raise ValueError(
            "The upper quartile of some samples is zero, cannot compute size factors "
            "with the upper quartile method."
        )
    size_factors = upper_quartiles / np.exp(np.mean(np.log(upper_quartiles)))
    return counts / size_factors[:, None], size_factors


def filter_counts(
    counts: pd.DataFrame,
    min_cpm: float = 1.0,
    min_samples: int | None = None,
) -> pd.DataFrame:
    """Remove lowly expressed features.

    A feature is kept if its counts per million (CPM) reach ``min_cpm`` in at least
    ``min_samples`` samples.

    Parameters
    ----------
    counts : pandas.DataFrame
            Raw counts. One column per feature, one row per sample.

    min_cpm : float
        CPM threshold. (default: ``1.0``).

    min_samples : int, optional
        Minimum number of samples in which a feature must reach the CPM threshold.
        If ``None``, half of the samples. (default: ``None``).

    Returns
    -------
    pandas.DataFrame
        Counts of the features that pass the filter.
    """
    if min_samples is None:
        min_samples = int(np.ceil(counts.shape[0] / 2))
    library_sizes = counts.sum(axis=1)
    if (library_sizes == 0).any():
        raise ValueError("Some samples have a library size of zero.")
    cpm = counts.div(library_sizes, axis=0) * 1e6
    keep = (cpm >= min_cpm).sum(axis=0) >= min_samples
    return counts.loc[:, keep]
