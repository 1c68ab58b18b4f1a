# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ._utils import (
    Correction,
    MNNPairs,
    _biological_basis,
    _check_k,
    _compute_correction,
    _lost_variance,
    _mutual_pairs,
    _to_dense,
)
from .errors import InvalidInputError, MNNError, NoMutualNeighborsError


logger = logging.getLogger("fastmnnpy")


class MergeState(Enum):
    BATCHES_REMAINING = "batches_remaining"
    REFERENCE_BUILT = "reference_built"
    ALL_MERGED = "all_merged"


@dataclass
class MergeStep:
    batch: str
    n_pairs: int
    # None for the batch that seeds the reference
    correction: Optional[Correction]
    # batch name -> fraction of its variance removed in this step
    lost_variance: dict


@dataclass
class MergeResult:
    names: List[str]
    # corrected [N_b, d] per batch, in the order of ``names``
    embeddings: List[np.ndarray]
    # [N_b, genes] per batch, None without a rotation to reconstruct from
    reconstructed: Optional[List[np.ndarray]]
    merge_order: List[str]
    # merged batch -> number of MNN pairs with the reference
    n_pairs: dict
    # [steps, batches]
    lost_variance: pd.DataFrame

    @property
    def embedding(self) -> np.ndarray:
        return np.vstack(self.embeddings)


class MNNMerger:
    """
    Sequentially merges batches into a growing reference with mutual nearest neighbours.

    The first batch of the merge order seeds the reference. Every following step
    finds MNN pairs between the current (corrected) reference and the next batch,
    estimates smoothed correction vectors, subtracts them from that batch and
    appends the corrected batch to the reference.

    Each batch is corrected towards everything merged before it, so the merge
    order changes the result. Put the largest or most heterogeneous batch first,
    or use ``auto_merge`` to let every step pick the batch with the most MNN pairs.

    :param k: number of nearest neighbours of each reference cell searched for in the batch being merged, defaults to 20
    :type k: int, optional
    :param k_reference: number of nearest neighbours of each cell of the merged batch searched for in the reference, defaults to ``k``
    :type k_reference: int | None, optional
    :param sigma: bandwidth of the Gaussian smoothing kernel, relative to the RMS radius of the merged batch, defaults to 0.1
    :type sigma: float, optional
    :param n_bio_components: number of within-batch principal directions that cell-specific corrections are orthogonalized against, 0 disables it, defaults to 2
    :type n_bio_components: int, optional
    :param correct_in: "embedding" to correct low-dimensional coordinates (fastMNN), "expression" to correct expression values, defaults to "embedding"
    :type correct_in: str, optional
    :param cos_norm: if to search neighbours by cosine distance, defaults to False
    :type cos_norm: bool, optional
    :param n_jobs: number of parallel jobs for neighbour search, defaults to None
    :type n_jobs: int | None, optional
    :param batch_size: number of cells smoothed at once, defaults to 1024
    :type batch_size: int, optional
    """

    def __init__(
        self,
        k: int = 20,
        k_reference: int | None = None,
        sigma: float = 0.1,
        n_bio_components: int = 2,
        correct_in: str = "embedding",
        cos_norm: bool = False,
        n_jobs: int | None = None,
        batch_size: int = 1024,
    ) -> None:
        _check_k(k)
        if k_reference is not None:
            _check_k(k_reference)
        if sigma is None or sigma <= 0:
            raise InvalidInputError(f"sigma must be positive, got {sigma}")
        if n_bio_components is not None and n_bio_components < 0:
            raise InvalidInputError(
                f"n_bio_components must be >= 0, got {n_bio_components}"
            )
        if correct_in not in ("embedding", "expression"):
            raise InvalidInputError(
                "`correct_in` argument should be `embedding` or `expression`."
            )

        self.k = k
        self.k_reference = k if k_reference is None else k_reference
        self.sigma = sigma
        self.n_bio_components = n_bio_components
        self.correct_in = correct_in
        self.cos_norm = cos_norm
        self.n_jobs = n_jobs
        self.batch_size = batch_size

        self.state = MergeState.BATCHES_REMAINING
        self.names = []
        self.auto_merge = False

        self._embeddings = {}
        self._expressions = None
        self._rotation = None
        self._center = None
        self._remaining = []
        self._merged = []
        self._corrected = {}
        self._corrected_expr = {}
        self._steps = []

    def fit(
        self,
        embeddings: Sequence,
        expressions: Sequence | None = None,
        names: Sequence[str] | None = None,
        rotation: np.ndarray | None = None,
        center: np.ndarray | None = None,
        merge_order: Sequence[str] | None = None,
        auto_merge: bool = False,
    ) -> MNNMerger:
        """Loads batches and resets the merger to ``MergeState.BATCHES_REMAINING``.

        :param embeddings: one ``[cells, d]`` matrix per batch, from a projection fitted jointly across batches
        :type embeddings: Sequence
        :param expressions: one ``[cells, genes]`` matrix per batch, required for ``correct_in="expression"``
        :type expressions: Sequence | None, optional
        :param names: batch names, defaults to "0", "1", ...
        :type names: Sequence[str] | None, optional
        :param rotation: ``[genes, d]`` gene loadings of the projection, used to reconstruct expression
        :type rotation: np.ndarray | None, optional
        :param center: ``[genes]`` centre subtracted before projecting
        :type center: np.ndarray | None, optional
        :param merge_order: order of batch names to merge in, defaults to the order of ``names``
        :type merge_order: Sequence[str] | None, optional
        :param auto_merge: if to pick, at every step, the remaining batch with the most MNN pairs, defaults to False
        :type auto_merge: bool, optional
        """
        if len(embeddings) == 0:
            raise InvalidInputError("no batches supplied")
        embeddings = [_to_dense(E) for E in embeddings]

        if names is None:
            names = [str(i) for i in range(len(embeddings))]
        names = [str(name) for name in names]
        if len(names) != len(embeddings):
            raise InvalidInputError("one name per batch is expected")
        if len(set(names)) != len(names):
            raise InvalidInputError(f"batch names must be unique, got {names}")

        d = embeddings[0].shape[1]
        for name, E in zip(names, embeddings):
            if E.ndim != 2 or E.shape[1] != d:
                raise InvalidInputError(
                    "all embeddings must share the same number of dimensions", batch=name
                )
            if E.shape[0] == 0:
                raise InvalidInputError("batch contains no cells", batch=name)

        if rotation is not None:
            rotation = _to_dense(rotation)
            if rotation.shape[1] != d:
                raise InvalidInputError(
                    f"rotation has {rotation.shape[1]} components, embeddings have {d}"
                )
            center = (
                np.zeros(rotation.shape[0]) if center is None else _to_dense(center).ravel()
            )
            if center.shape[0] != rotation.shape[0]:
                raise InvalidInputError("center and rotation must cover the same genes")

        if self.correct_in == "expression":
            if expressions is None or rotation is None:
                raise InvalidInputError(
                    "correct_in='expression' needs expressions and the rotation to re-project them"
                )
        if expressions is not None:
            if len(expressions) != len(embeddings):
                raise InvalidInputError("one expression matrix per batch is expected")
            expressions = [_to_dense(X) for X in expressions]
            for name, E, X in zip(names, embeddings, expressions):
                if X.shape[0] != E.shape[0]:
                    raise InvalidInputError(
                        "expression and embedding have different numbers of cells",
                        batch=name,
                    )
                if rotation is not None and X.shape[1] != rotation.shape[0]:
                    raise InvalidInputError(
                        "expression and rotation cover different genes", batch=name
                    )

        if merge_order is not None:
            if auto_merge:
                raise InvalidInputError("`merge_order` and `auto_merge` are exclusive")
            merge_order = [str(name) for name in merge_order]
            if sorted(merge_order) != sorted(names):
                raise InvalidInputError(
                    f"merge_order {merge_order} must be a permutation of the batches {names}"
                )
            order = merge_order
        elif auto_merge:
            # the largest batch seeds the reference
            sizes = [E.shape[0] for E in embeddings]
            first = int(np.argmax(sizes))
            order = [names[first]] + [n for i, n in enumerate(names) if i != first]
        else:
            order = list(names)

        self.names = names
        self.auto_merge = auto_merge
        self._embeddings = dict(zip(names, embeddings))
        self._expressions = None if expressions is None else dict(zip(names, expressions))
        self._rotation = rotation
        self._center = center
        self._remaining = order
        self._merged = []
        self._corrected = {}
        self._corrected_expr = {}
        self._steps = []
        self.state = MergeState.BATCHES_REMAINING

        return self

    @property
    def remaining(self) -> List[str]:
        return list(self._remaining)

    @property
    def merged(self) -> List[str]:
        return list(self._merged)

    @property
    def steps(self) -> List[MergeStep]:
        return list(self._steps)

    @property
    def reference(self) -> np.ndarray:
        """Corrected coordinates of all batches merged so far, in merge order."""
        if not self._merged:
            raise MNNError("the reference has not been built yet")
        return np.vstack([self._corrected[name] for name in self._merged])

    def _reference_values(self) -> np.ndarray:
        if self.correct_in == "expression":
            return np.vstack([self._corrected_expr[name] for name in self._merged])
        return self.reference

    def _find_pairs(self, reference: np.ndarray, name: str) -> MNNPairs:
        target = self._embeddings[name]
        if max(self.k, self.k_reference) > 0.5 * min(reference.shape[0], target.shape[0]):
            logger.warning(
                "k=%i is large relative to batch '%s' (%i cells) and the reference (%i cells), "
                "MNN pairs will lose specificity",
                max(self.k, self.k_reference),
                name,
                target.shape[0],
                reference.shape[0],
            )
        # first: reference cells, second: cells of the batch being merged
        try:
            return _mutual_pairs(
                reference,
                target,
                k=self.k,
                k_b=self.k_reference,
                n_jobs=self.n_jobs,
                cos_norm=self.cos_norm,
            )
        except MNNError as exc:
            if exc.batch is not None:
                raise
            raise type(exc)(str(exc), batch=name) from exc

    def _next_batch(self, reference: np.ndarray) -> tuple:
        if not self.auto_merge:
            name = self._remaining[0]
            return name, self._find_pairs(reference, name)

        best = None
        for name in self._remaining:
            pairs = self._find_pairs(reference, name)
            logger.debug("batch '%s': %i MNN pairs with the reference", name, len(pairs))
            if best is None or len(pairs) > len(best[1]):
                best = (name, pairs)
        return best

    def _seed(self) -> MergeStep:
        name = self._remaining[0]
        self._corrected[name] = self._embeddings[name].copy()
        if self._expressions is not None:
            self._corrected_expr[name] = self._expressions[name].copy()
        self._merged.append(name)
        self._remaining.remove(name)

        self.state = (
            MergeState.REFERENCE_BUILT if self._remaining else MergeState.ALL_MERGED
        )
        logger.info("batch '%s' seeds the reference", name)

        step = MergeStep(batch=name, n_pairs=0, correction=None, lost_variance={})
        self._steps.append(step)
        return step

    def step(self) -> MergeStep:
        """Merges one batch. The first call seeds the reference.

        Any error aborts the step and leaves the merger as it was before the call.
        """
        if self.state is MergeState.ALL_MERGED:
            raise MNNError("all batches are already merged")
        if not self._remaining:
            raise MNNError("no batches loaded, call `fit` first")

        if not self._merged:
            return self._seed()

        name = None if self.auto_merge else self._remaining[0]
        try:
            reference = self.reference
            name, pairs = self._next_batch(reference)
            if len(pairs) == 0:
                raise NoMutualNeighborsError(
                    "no mutual nearest neighbour pairs with the reference; "
                    f"consider increasing k (currently {self.k})"
                )

            target_embedding = self._embeddings[name]
            if self.correct_in == "expression":
                target = self._expressions[name]
            else:
                target = target_embedding

            correction = _compute_correction(
                self._reference_values(),
                target,
                pairs,
                sigma=self.sigma,
                target_space=target_embedding,
                bio_basis=_biological_basis(target, self.n_bio_components),
                batch_size=self.batch_size,
            )
            corrected = target - correction.vectors
            lost = _lost_variance(target, corrected)
        except MNNError as exc:
            if exc.batch is None and name is not None:
                raise type(exc)(str(exc), batch=name) from exc
            raise

        if self.correct_in == "expression":
            self._corrected_expr[name] = corrected
            # [N_b, d] = [N_b, genes] x [genes, d]
            self._corrected[name] = (corrected - self._center) @ self._rotation
        else:
            self._corrected[name] = corrected
            if self._expressions is not None:
                self._corrected_expr[name] = self._expressions[name]

        self._merged.append(name)
        self._remaining.remove(name)

        lost_variance = {batch: 0.0 for batch in self.names}
        lost_variance[name] = lost
        step = MergeStep(
            batch=name,
            n_pairs=len(pairs),
            correction=correction,
            lost_variance=lost_variance,
        )
        self._steps.append(step)

        if not self._remaining:
            self.state = MergeState.ALL_MERGED

        logger.info(
            "merged batch '%s': %i MNN pairs, %.4f of its variance removed",
            name,
            len(pairs),
            lost,
        )
        return step

    def merge_all(self) -> MNNMerger:
        while self.state is not MergeState.ALL_MERGED:
            self.step()
        return self

    def result(self) -> MergeResult:
        if self.state is not MergeState.ALL_MERGED:
            raise MNNError(
                f"merging is not finished, batches remaining: {self._remaining}"
            )

        embeddings = [self._corrected[name] for name in self.names]

        reconstructed = None
        if self.correct_in == "expression":
            reconstructed = [self._corrected_expr[name] for name in self.names]
        elif self._rotation is not None:
            # [N_b, genes] = [N_b, d] x [d, genes] + [genes]
            reconstructed = [E @ self._rotation.T + self._center for E in embeddings]

        merge_steps = [step for step in self._steps if step.correction is not None]
        lost_variance = pd.DataFrame(
            [[step.lost_variance[name] for name in self.names] for step in merge_steps],
            index=pd.Index([step.batch for step in merge_steps], name="merged_batch"),
            columns=self.names,
            dtype=float,
        )

        return MergeResult(
            names=list(self.names),
            embeddings=embeddings,
            reconstructed=reconstructed,
            merge_order=list(self._merged),
            n_pairs={step.batch: step.n_pairs for step in self._steps},
            lost_variance=lost_variance,
        )
