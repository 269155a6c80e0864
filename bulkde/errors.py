"""
Exceptions raised by the bulk RNA-seq pipeline.

Input problems abort the run; modeling problems abort either the whole
fit (DesignError) or a single contrast (ConfoundedContrastError).
"""


class BulkDEError(Exception):
    """Base class for pipeline errors."""


class InputError(BulkDEError):
    """Malformed input table or configuration."""


class SampleOrderError(BulkDEError):
    """Sample metadata rows do not line up with count matrix columns."""


class DesignError(BulkDEError):
    """The experimental design cannot be fit."""


class ConfoundedContrastError(DesignError):
    """A contrast cannot be separated from other terms in the design."""

    def __init__(self, contrast, reason):
        self.contrast = contrast
        self.reason = reason
        super().__init__(f"Contrast {contrast_name(contrast)} is not estimable: {reason}")


def contrast_name(contrast):
    """Name a [factor, level, reference] contrast, e.g. 'bisphenol_BPA_vs_Untreated'."""
    factor, level, reference = contrast
    return f"{factor}_{level}_vs_{reference}"


class EnrichmentError(BulkDEError):
    """A gene-set library or pathway database could not be loaded."""
