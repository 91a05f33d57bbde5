"""Translate a ModelSpec and dataset into fixed and group-level design arrays."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from ..data.dataset import PayrollDataset
from ..data.indexing import GroupIndex
from ..errors import SpecificationError
from .priors import CoefficientPrior
from .spec import INTERCEPT, GroupStructure, ModelSpec


@dataclass(frozen=True)
class GroupDesign:
    """Per-factor group-level design: codes plus one column per term."""

    structure: GroupStructure
    index: GroupIndex
    codes: np.ndarray
    columns: np.ndarray

    @property
    def factor(self) -> str:
        return self.structure.factor

    @property
    def n_groups(self) -> int:
        return self.index.size

    @property
    def n_terms(self) -> int:
        return self.structure.size

    @property
    def width(self) -> int:
        return self.n_groups * self.n_terms


@dataclass(frozen=True)
class DesignMatrices:
    y: np.ndarray
    X: np.ndarray
    coef_names: Tuple[str, ...]
    coef_priors: Tuple[CoefficientPrior, ...]
    groups: Tuple[GroupDesign, ...]

    @property
    def n_obs(self) -> int:
        return self.X.shape[0]

    @property
    def n_fixed(self) -> int:
        return self.X.shape[1]

    @property
    def n_random(self) -> int:
        return sum(group.width for group in self.groups)

    def random_design(self) -> sp.csc_matrix:
        """Sparse Z with group-major column blocks: factor, then group, then term."""
        n = self.n_obs
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        vals: List[np.ndarray] = []
        offset = 0
        for group in self.groups:
            for term in range(group.n_terms):
                rows.append(np.arange(n))
                cols.append(offset + group.codes * group.n_terms + term)
                vals.append(group.columns[:, term])
            offset += group.width
        if not rows:
            return sp.csc_matrix((n, 0))
        return sp.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(n, offset),
        ).tocsc()


def build_design(spec: ModelSpec, dataset: PayrollDataset) -> DesignMatrices:
    """Assemble design arrays; the dataset and spec are left untouched."""
    for factor in spec.factors:
        if factor not in dataset.codes:
            raise SpecificationError(f"Dataset has no categorical field {factor!r} required by {spec.name!r}.")
    try:
        y = np.array(dataset.column(spec.response), dtype=float)
    except KeyError as exc:
        raise SpecificationError(f"Dataset has no response field {spec.response!r}.") from exc

    X, names, priors = fixed_matrix(spec, dataset.numeric, dataset.codes, dataset.indexes, n_obs=dataset.n_obs)
    groups = tuple(
        GroupDesign(
            structure=structure,
            index=dataset.indexes[structure.factor],
            codes=np.array(dataset.codes[structure.factor]),
            columns=term_columns(structure, dataset.numeric, dataset.n_obs),
        )
        for structure in spec.groups
    )
    return DesignMatrices(y=y, X=X, coef_names=names, coef_priors=priors, groups=groups)


def fixed_matrix(
    spec: ModelSpec,
    numeric: Mapping[str, np.ndarray],
    codes: Mapping[str, np.ndarray],
    indexes: Mapping[str, GroupIndex],
    n_obs: Optional[int] = None,
) -> Tuple[np.ndarray, Tuple[str, ...], Tuple[CoefficientPrior, ...]]:
    """Fixed-effect columns; categorical terms get one dummy per non-reference level."""
    n = n_obs if n_obs is not None else len(next(iter(numeric.values())))
    columns: List[np.ndarray] = []
    names: List[str] = []
    priors: List[CoefficientPrior] = []
    for term in spec.fixed:
        if term.kind == "intercept":
            columns.append(np.ones(n))
            names.append(INTERCEPT)
            priors.append(term.prior)
        elif term.kind == "continuous":
            columns.append(np.asarray(numeric[term.predictor], dtype=float))
            names.append(term.predictor)
            priors.append(term.prior)
        else:
            index = indexes[term.predictor]
            factor_codes = np.asarray(codes[term.predictor])
            for position, label in enumerate(index.labels[1:], start=1):
                columns.append((factor_codes == position).astype(float))
                names.append(f"{term.predictor}[{label}]")
                priors.append(term.prior)
    X = np.column_stack(columns) if columns else np.zeros((n, 0))
    return X, tuple(names), tuple(priors)


def term_columns(structure: GroupStructure, numeric: Mapping[str, np.ndarray], n: int) -> np.ndarray:
    values: List[np.ndarray] = []
    for term in structure.terms:
        if term == INTERCEPT:
            values.append(np.ones(n))
        else:
            values.append(np.asarray(numeric[term], dtype=float))
    return np.column_stack(values)


def check_full_rank(design: DesignMatrices) -> None:
    if design.n_fixed > design.n_obs:
        raise SpecificationError("More fixed-effect columns than observations.")
    rank = np.linalg.matrix_rank(design.X)
    if rank < design.n_fixed:
        raise SpecificationError(
            f"Fixed-effect design is rank deficient ({rank} < {design.n_fixed}); drop a redundant term."
        )


__all__ = [
    "DesignMatrices",
    "GroupDesign",
    "build_design",
    "check_full_rank",
    "fixed_matrix",
    "term_columns",
]
