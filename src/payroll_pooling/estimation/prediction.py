"""Point predictions from a fitted model for new compensation rows."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, Union

import numpy as np

from ..errors import InvalidInputError
from ..modeling.design import fixed_matrix, term_columns
from .results import FitResult

Row = Union[Mapping[str, Any], Any]
UnknownPolicy = Optional[Literal["population"]]


def predict(fit: FitResult, rows: Iterable[Row], allow_unknown: UnknownPolicy = None) -> np.ndarray:
    """Expected response for each row, on the scale the data was supplied in.

    Rows may be CompensationRecords or mappings holding the predictor fields.
    A label the fit never saw raises UnknownCategoryError. With
    ``allow_unknown="population"`` an unseen label of a grouping factor gets a
    zero group effect instead; unseen levels of a fixed categorical predictor
    always raise, since no coefficient exists for them.
    """
    if allow_unknown not in (None, "population"):
        raise ValueError(f"Unsupported unknown-label policy: {allow_unknown!r}")
    row_list = list(rows)
    if not row_list:
        return np.zeros(0)

    spec = fit.spec
    numeric: Dict[str, np.ndarray] = {}
    for name in _continuous_predictors(fit):
        values = np.asarray([_field(row, name, position) for position, row in enumerate(row_list)], dtype=float)
        if fit.scaling is not None and name in fit.scaling.centers:
            values = fit.scaling.forward(name, values)
        numeric[name] = values

    labels = {
        factor: [str(_field(row, factor, position)) for position, row in enumerate(row_list)]
        for factor in spec.factors
    }
    fixed_factors = {term.predictor for term in spec.fixed if term.kind == "categorical"}
    codes: Dict[str, np.ndarray] = {}
    for factor, values in labels.items():
        index = fit.indexes[factor]
        if factor in fixed_factors or allow_unknown is None:
            codes[factor] = index.codes(values)
        else:
            codes[factor] = np.asarray([index.index_of(v) - 1 if v in index else -1 for v in values], dtype=np.int64)

    X, names, _ = fixed_matrix(spec, numeric, codes, fit.indexes, n_obs=len(row_list))
    coefficients = fit.coefficients()
    beta = np.asarray([coefficients[name] for name in names], dtype=float)
    prediction = X @ beta

    n = len(row_list)
    for structure in spec.groups:
        factor = structure.factor
        table = _effect_table(fit, factor, structure.terms)
        columns = term_columns(structure, numeric, n)
        factor_codes = codes[factor]
        known = factor_codes >= 0
        contribution = np.einsum("ij,ij->i", table[np.where(known, factor_codes, 0)], columns)
        prediction = prediction + np.where(known, contribution, 0.0)

    if fit.scaling is not None and spec.response in fit.scaling.centers:
        prediction = fit.scaling.backward(spec.response, prediction)
    return prediction


def _effect_table(fit: FitResult, factor: str, terms: Tuple[str, ...]) -> np.ndarray:
    """(groups x terms) matrix of group-level estimates in index order."""
    index = fit.indexes[factor]
    table = np.zeros((index.size, len(terms)))
    positions = {term: t for t, term in enumerate(terms)}
    for effect in fit.group_effects:
        if effect.factor == factor:
            table[effect.index - 1, positions[effect.term]] = effect.estimate
    return table


def _continuous_predictors(fit: FitResult) -> List[str]:
    # Varying slopes are validated to be continuous fixed effects as well.
    return [term.predictor for term in fit.spec.fixed if term.kind == "continuous"]


def _field(row: Row, name: str, position: int) -> Any:
    if isinstance(row, Mapping):
        if name not in row:
            raise InvalidInputError(f"Row {position} is missing {name!r} needed for prediction.")
        return row[name]
    try:
        return getattr(row, name)
    except AttributeError as exc:
        raise InvalidInputError(f"Row {position} is missing {name!r} needed for prediction.") from exc


__all__ = ["predict"]
