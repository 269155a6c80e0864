"""
Experimental design checks for the bulk RNA-seq pipeline.

Parses additive R-style formulas, coerces factors to categoricals with a
fixed level set, and checks that the design and each requested contrast
can be estimated before anything is fit.
"""

import re

import numpy as np
import pandas as pd

from .errors import ConfoundedContrastError, DesignError


def parse_formula(formula):
    """
    Factor names of an additive formula such as '~knockout_status + bisphenol'.

    Interaction terms and transformations are not supported.
    """
    rhs = formula.strip()
    if not rhs.startswith('~'):
        raise DesignError(f"Design formula must start with '~': {formula!r}")

    terms = [t.strip() for t in rhs[1:].split('+')]
    terms = [t for t in terms if t not in ('', '1')]

    for term in terms:
        if not re.fullmatch(r'[A-Za-z_][A-Za-z0-9_.]*', term):
            raise DesignError(f"Unsupported design term {term!r} in {formula!r}")

    if len(set(terms)) != len(terms):
        raise DesignError(f"Repeated term in design formula {formula!r}")

    return terms


def coerce_factors(sample_metadata, factor_levels):
    """
    Convert design factors to categoricals with a fixed level set.

    Parameters
    ----------
    sample_metadata : pd.DataFrame
        Sample x factor table.
    factor_levels : dict
        Factor -> {'levels': [...], 'reference': ...}. The reference level
        is placed first.

    Returns
    -------
    pd.DataFrame
        New table; unrelated columns are left as they are. Categories
        not observed in any sample are dropped.
    """
    metadata = sample_metadata.copy()

    for factor, level_spec in factor_levels.items():
        level_spec = level_spec or {}
        if factor not in metadata.columns:
            raise DesignError(f"Factor '{factor}' not found in sample metadata")

        levels = [str(l) for l in level_spec.get('levels') or sorted(metadata[factor].astype(str).unique())]
        reference = str(level_spec.get('reference', levels[0]))
        if reference not in levels:
            raise DesignError(f"Reference level '{reference}' not among levels of '{factor}': {levels}")
        levels = [reference] + [l for l in levels if l != reference]

        values = metadata[factor].astype(str)
        unknown = sorted(set(values) - set(levels))
        if unknown:
            raise DesignError(f"Factor '{factor}' has levels {unknown} outside {levels}")

        # Unobserved levels would add all-zero design columns
        metadata[factor] = pd.Categorical(values, categories=levels).remove_unused_categories()

    return metadata


def observed_levels(sample_metadata, factor):
    """Levels of a factor present in at least one sample, in category order."""
    column = sample_metadata[factor]
    if isinstance(column.dtype, pd.CategoricalDtype):
        present = set(column.dropna())
        return [l for l in column.cat.categories if l in present]
    return list(pd.unique(column.dropna()))


def design_matrix(sample_metadata, factors):
    """
    Treatment-coded design matrix: intercept plus one column per non-reference
    observed level of each factor.
    """
    columns = {'Intercept': np.ones(len(sample_metadata))}

    for factor in factors:
        levels = observed_levels(sample_metadata, factor)
        for level in levels[1:]:
            columns[f"{factor}[T.{level}]"] = (sample_metadata[factor] == level).astype(float).values

    return pd.DataFrame(columns, index=sample_metadata.index)


def validate_design(sample_metadata, formula):
    """
    Check that the base model can be fit.

    Every factor must exist, have at least two observed levels, and the
    design matrix must be full rank with at least one residual degree of
    freedom.

    Returns
    -------
    pd.DataFrame
        The design matrix.
    """
    factors = parse_formula(formula)
    if not factors:
        raise DesignError(f"Design formula {formula!r} has no factors")

    for factor in factors:
        if factor not in sample_metadata.columns:
            raise DesignError(f"Factor '{factor}' in formula {formula!r} not found in sample metadata")
        levels = observed_levels(sample_metadata, factor)
        if len(levels) < 2:
            raise DesignError(f"Factor '{factor}' has fewer than 2 observed levels: {levels}")

    X = design_matrix(sample_metadata, factors)
    rank = np.linalg.matrix_rank(X.values)

    if rank < X.shape[1]:
        raise DesignError(
            f"Design matrix for {formula!r} is not full rank "
            f"(rank {rank} < {X.shape[1]} columns); terms are aliased"
        )

    residual_df = X.shape[0] - rank
    if residual_df < 1:
        raise DesignError(
            f"Design {formula!r} leaves no residual degrees of freedom "
            f"({X.shape[0]} samples, {rank} parameters)"
        )

    return X


def check_contrast(sample_metadata, formula, contrast):
    """
    Raise ConfoundedContrastError unless the contrast is separable.

    A contrast [factor, level, reference] is rejected when either level is
    unobserved, when either side is seen within a single level of another
    design factor, when the two sides share no level of another factor, or
    when the contrast vector is not in the row space of the design matrix.
    """
    factor, level, reference = (str(c) for c in contrast)
    factors = parse_formula(formula)

    if factor not in factors:
        raise ConfoundedContrastError(contrast, f"factor '{factor}' is not in the design {formula!r}")
    if level == reference:
        raise ConfoundedContrastError(contrast, "level and reference are identical")

    levels = observed_levels(sample_metadata, factor)
    for l in (level, reference):
        if l not in levels:
            raise ConfoundedContrastError(contrast, f"level '{l}' of '{factor}' is not observed")

    sides = {
        level: sample_metadata[sample_metadata[factor] == level],
        reference: sample_metadata[sample_metadata[factor] == reference],
    }

    for other in factors:
        if other == factor or len(observed_levels(sample_metadata, other)) < 2:
            continue
        seen = {l: set(side[other].astype(str)) for l, side in sides.items()}
        for l, with_other in seen.items():
            if len(with_other) < 2:
                raise ConfoundedContrastError(
                    contrast,
                    f"'{l}' is only observed with {other} = {sorted(with_other)[0]}",
                )
        if not seen[level] & seen[reference]:
            raise ConfoundedContrastError(
                contrast,
                f"'{level}' and '{reference}' share no level of {other}",
            )

    X = design_matrix(sample_metadata, factors)
    c = pd.Series(0.0, index=X.columns)
    for l, sign in ((level, 1.0), (reference, -1.0)):
        name = f"{factor}[T.{l}]"
        if name in c.index:
            c[name] += sign

    rank = np.linalg.matrix_rank(X.values)
    augmented = np.vstack([X.values, c.values])
    if np.linalg.matrix_rank(augmented) > rank:
        raise ConfoundedContrastError(contrast, "contrast is not estimable from the design matrix")
