"""
Bulk RNA-seq Differential Expression Pipeline
=============================================

A reusable Python package for turning salmon transcript quantifications
into gene-level differential expression and enrichment results.

Main Functions
--------------
quant_de()      - Summarize transcript quantifications into an annotated count matrix
prep_de()       - Load, clean and filter the count matrix; build sample metadata
qc_de()         - Library metrics and quality control plots
drop_samples()  - Remove problematic samples after QC
vst_de()        - Variance-stabilizing transform for visualization
stat_de()       - Fit the DESeq2 model and extract one table per contrast
viz_de()        - Dispersion, PCA, distance, volcano and heatmap plots
enrich_de()     - GO and KEGG over-representation and preranked GSEA
save_data()     - Save analysis data for later
load_data()     - Load saved analysis data

Example Workflow
----------------
>>> from bulkde import quant_de, prep_de, qc_de, vst_de, stat_de, viz_de, enrich_de
>>>
>>> quant_de('config/experiment.yaml')
>>> data = prep_de('config/experiment.yaml')
>>> qc_de(data)
>>> data = vst_de(data)
>>> data = stat_de(data)
>>> viz_de(data)
>>> data = enrich_de(data, 'knockout_status_KO_vs_WT')
"""

from .quant import quant_de
from .prep import prep_de
from .qc import qc_de, drop_samples
from .normalization import vst_de
from .statistics import stat_de
from .visualization import viz_de
from .enrichment import enrich_de, ranked_gene_list
from .utils import save_data, load_data, read_results, write_results


__version__ = "0.1.0"

__all__ = [
    'quant_de',
    'prep_de',
    'qc_de',
    'drop_samples',
    'vst_de',
    'stat_de',
    'viz_de',
    'enrich_de',
    'ranked_gene_list',
    'save_data',
    'load_data',
    'read_results',
    'write_results',
]
