"""
A simple PyMDSeq workflow
=========================

In this example, we show how to test for differential mean and differential
dispersion on a count matrix, using PyMDSeq.

.. contents:: Contents
    :local:
    :depth: 3

We start by importing required packages and setting up an optional path to save results.

"""

# %%

import os
import pickle as pkl

import numpy as np
import pandas as pd

from pymdseq.default_inference import DefaultInference
from pymdseq.mds import MDSeqStats
from pymdseq.mds import pairwise_comparisons
from pymdseq.mdds import MDSeqDataSet
from pymdseq.preprocessing import filter_counts

SAVE = False  # whether to save the outputs of this notebook

if SAVE:
    # Replace this with the path to directory where you would like results to be saved
    OUTPUT_PATH = "../output_files/synthetic_example"
    os.makedirs(OUTPUT_PATH, exist_ok=True)  # Create path if it doesn't exist

# %%
# Data simulation
# ---------------
#
# PyMDSeq requires two types of inputs:
#
#   * A count matrix of shape 'number of samples' x 'number of features', containing
#     non-negative integers,
#   * Metadata of shape 'number of samples' x 'number of variables', containing sample
#     annotations that will be used to build the design.
#
# Both should be provided as `pandas dataframes
# <https://pandas.pydata.org/docs/reference/api/pandas.DataFrame.html>`_.
#
# We simulate 40 samples split between conditions ``A`` and ``B``. The first 20
# features have a higher mean in condition ``B``, the next 20 a higher dispersion, and
# the remaining features are unchanged.

rng = np.random.default_rng(0)
num_samples, num_features = 40, 200
condition = np.array(["A"] * (num_samples // 2) + ["B"] * (num_samples // 2))

mu = np.full((num_samples, num_features), 100.0)
alpha = np.full((num_samples, num_features), 0.1)
mu[condition == "B", :20] *= 4
alpha[condition == "B", 20:40] *= 8

counts_df = pd.DataFrame(
    rng.negative_binomial(1 / alpha, 1 / (1 + alpha * mu)),
    index=[f"sample{i}" for i in range(num_samples)],
    columns=[f"feature{j}" for j in range(num_features)],
)
metadata = pd.DataFrame(
    {
        "condition": condition,
        "batch": rng.choice(["X", "Y"], size=num_samples),
    },
    index=counts_df.index,
)

print(counts_df)

# %%
# Data filtering
# ^^^^^^^^^^^^^^
#
# It is good practice to remove lowly expressed features before fitting models.
# :func:`filter_counts <pymdseq.preprocessing.filter_counts>` keeps features whose
# counts per million reach a threshold in enough samples.

counts_df = filter_counts(counts_df, min_cpm=1.0)

# %%
# .. currentmodule:: pymdseq.mdds
#
# Fitting mean-dispersion models with :class:`MDSeqDataSet`
# ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^
#
# A :class:`MDSeqDataSet` fits, for every feature, a negative binomial GLM in which
# both the mean and the dispersion depend on covariates. The ``design`` formula
# describes the mean model and the ``disp_design`` formula the dispersion model.
# By default, influential observations are detected and the models refitted without
# them.

inference = DefaultInference(n_cpus=4)
mdds = MDSeqDataSet(
    counts=counts_df,
    metadata=metadata,
    design="~batch + condition",
    disp_design="~condition",
    inference=inference,
)
mdds.mdseq()

if SAVE:
    with open(os.path.join(OUTPUT_PATH, "mdds.pkl"), "wb") as f:
        pkl.dump(mdds, f)

# %%
# Fitted coefficients (in natural log scale) and convergence diagnostics are gathered
# by :meth:`fit_table() <MDSeqDataSet.fit_table>`.

print(mdds.fit_table())

# %%
# .. currentmodule:: pymdseq.mds
#
# Statistical analysis with the :class:`MDSeqStats` class
# ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^
#
# Both the mean and the dispersion are tested for the same comparison, since
# ``condition`` is part of the two designs.

ms = MDSeqStats(mdds, contrast=["condition", "B", "A"], inference=inference)
ms.summary()

# %%
# Threshold tests
# """""""""""""""
#
# Rather than testing for any change, one may test whether the absolute log2 fold
# change exceeds a threshold. Results are reported in the ``*Thr*`` columns.

ms.summary(lfc_threshold=0.5)
print(ms.results_df[["meanLog2FC", "meanThrPadj", "dispLog2FC", "dispThrPadj"]])

# %%
# Zero-inflated models
# --------------------
#
# When counts contain an excess of zeros, a zero-inflated model may be fitted instead.
# The proportion of structural zeros and a test of zero inflation are reported for
# each feature.

mdds_zi = MDSeqDataSet(
    counts=counts_df,
    metadata=metadata,
    design="~condition",
    zero_inflated=True,
    inference=inference,
)
mdds_zi.mdseq()

ms_zi = MDSeqStats(mdds_zi, contrast=["condition", "B", "A"], inference=inference)
ms_zi.summary()
print(ms_zi.results_df[["ziProp", "ziPvalue", "zeroInflation"]])

# %%
# Pairwise comparisons
# --------------------
#
# :func:`pairwise_comparisons` tests every pair of levels of a factor.

results = pairwise_comparisons(mdds, "batch", quiet=True)
print(results["Y_vs_X"])
