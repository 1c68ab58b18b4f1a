"""
Mutual nearest neighbours (MNN) batch correction:

1. Projection:
    - log-normalized expression, subset by highly variable genes
    - PCA (by default, d=50) fitted jointly across batches,
        every batch centred on itself and weighted equally,
        saving the gene loadings and the centre

2. Mutual nearest neighbours
    - k nearest cells of the reference in the next batch and vice versa (k-d tree)
    - pairs that are each among the other's k nearest neighbours

3. Correction vectors
    - differences between paired cells (batch vectors)
    - Gaussian-weighted average of batch vectors for every cell of the batch
    - cell-specific deviations orthogonalized against
        the main directions of biological variation of the batch
    - subtract, record the fraction of variance lost

4. Merging
    - batches are merged one by one into a growing reference,
        so the merge order is a parameter

5*. Diagnostics: lost variance, batch mixing per cluster, cluster agreement
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from .errors import (
    MNNError,
    InvalidInputError,
    NoMutualNeighborsError,
    NumericalInstabilityError,
)
from .merging import MNNMerger, MergeResult, MergeState, MergeStep
