from pymdseq.__version__ import __version__
from pymdseq.mdds import MDSeqDataSet
from pymdseq.mds import MDSeqStats
from pymdseq.mds import pairwise_comparisons

__all__ = ["MDSeqDataSet", "MDSeqStats", "pairwise_comparisons", "__version__"]
