"""
External engines used by the bulk RNA-seq pipeline.

Each engine is a small class with a narrow interface so that the
pipeline stages can be exercised with stub implementations:

- PyDESeq2Engine   fit / results / vst / dispersions   (pydeseq2)
- MyGeneAnnotator  lookup / to_entrez                  (mygene)
- GseapyEngine     gene_sets / enrich / prerank        (gseapy)
- KeggPathways     gene_sets                           (KEGG REST via requests)
"""

import time

import numpy as np
import pandas as pd
import requests

RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


# ============================================================================
# DIFFERENTIAL EXPRESSION
# ============================================================================

class PyDESeq2Engine:
    """
    DESeq2 negative-binomial GLM via pydeseq2.

    Parameters
    ----------
    alpha : float
        Significance level used for independent filtering.
    n_cpus : int
        Worker processes for per-gene fits.
    refit_cooks : bool
        Refit genes flagged as Cook's distance outliers.
    """

    def __init__(self, alpha=0.05, n_cpus=1, refit_cooks=True):
        self.alpha = alpha
        self.n_cpus = n_cpus
        self.refit_cooks = refit_cooks

    def _inference(self):
        from pydeseq2.default_inference import DefaultInference
        return DefaultInference(n_cpus=self.n_cpus)

    def _dataset(self, counts, metadata, formula):
        from pydeseq2.dds import DeseqDataSet

        # pydeseq2 expects samples x genes
        return DeseqDataSet(
            counts=counts.T,
            metadata=metadata,
            design=formula,
            refit_cooks=self.refit_cooks,
            inference=self._inference(),
            quiet=True,
        )

    def fit(self, counts, metadata, formula):
        """Fit size factors, dispersions and LFCs for every gene."""
        dds = self._dataset(counts, metadata, formula)
        dds.deseq2()
        return dds

    def results(self, model, contrast):
        """Wald test results for one [factor, level, reference] contrast."""
        from pydeseq2.ds import DeseqStats

        ds = DeseqStats(
            model,
            contrast=list(contrast),
            alpha=self.alpha,
            inference=self._inference(),
            quiet=True,
        )
        ds.summary()
        return ds.results_df[RESULT_COLUMNS].copy()

    def vst(self, counts, metadata, formula):
        """Blind variance-stabilizing transform, genes x samples."""
        dds = self._dataset(counts, metadata, formula)
        dds.vst(use_design=False)
        return pd.DataFrame(
            dds.layers['vst_counts'],
            index=dds.obs_names,
            columns=dds.var_names,
        ).T

    def dispersions(self, model):
        """Gene-wise, fitted and final dispersions with mean normalized counts."""
        return pd.DataFrame({
            'baseMean': np.asarray(model.layers['normed_counts']).mean(axis=0),
            'genewise': model.varm['genewise_dispersions'],
            'fitted': model.varm['fitted_dispersions'],
            'final': model.varm['dispersions'],
        }, index=model.var_names)


# ============================================================================
# GENE ANNOTATION
# ============================================================================

class MyGeneAnnotator:
    """
    Best-effort gene identifier lookup through mygene.info.

    Identifiers that do not resolve are returned with empty fields rather
    than raising.
    """

    def __init__(self, species='human', scopes='ensembl.gene', fields='symbol,name'):
        self.species = species
        self.scopes = scopes
        self.fields = fields

    def _query(self, gene_ids, fields):
        import mygene
        mg = mygene.MyGeneInfo()

        results = mg.querymany(
            list(gene_ids),
            scopes=self.scopes,
            fields=fields,
            species=self.species,
            returnall=True,
            verbose=False,
        )
        return results['out']

    def lookup(self, gene_ids):
        """
        Resolve gene identifiers to symbol and description.

        Returns
        -------
        pd.DataFrame
            Indexed by gene id with 'name' and 'description' columns.
        """
        gene_ids = list(dict.fromkeys(gene_ids))
        annotation = pd.DataFrame({'name': '', 'description': ''}, index=pd.Index(gene_ids, name='gene_id'))

        for hit in self._query(gene_ids, self.fields):
            query_id = hit['query']
            if hit.get('notfound') or query_id not in annotation.index:
                continue
            # First hit wins for ids that match several records
            if annotation.at[query_id, 'name'] or annotation.at[query_id, 'description']:
                continue
            annotation.at[query_id, 'name'] = hit.get('symbol', '')
            annotation.at[query_id, 'description'] = hit.get('name', '')

        return annotation

    def to_entrez(self, gene_ids):
        """Map gene ids to Entrez ids; unmapped ids are omitted."""
        mapping = {}
        for hit in self._query(list(dict.fromkeys(gene_ids)), 'entrezgene'):
            if hit.get('notfound') or 'entrezgene' not in hit:
                continue
            mapping.setdefault(hit['query'], str(hit['entrezgene']))
        return mapping


# ============================================================================
# ENRICHMENT
# ============================================================================

class GseapyEngine:
    """
    Over-representation and preranked GSEA through gseapy.

    Parameters
    ----------
    organism : str
        Organism for Enrichr gene-set libraries ('Human', 'Mouse', ...).
    min_size, max_size : int
        Gene-set size bounds for prerank.
    permutation_num : int
        Permutations for prerank.
    seed : int
        Random seed for prerank permutations.
    """

    def __init__(self, organism='Human', min_size=15, max_size=500,
                 permutation_num=1000, seed=42, threads=1):
        self.organism = organism
        self.min_size = min_size
        self.max_size = max_size
        self.permutation_num = permutation_num
        self.seed = seed
        self.threads = threads

    def gene_sets(self, library):
        import gseapy as gp
        return gp.get_library(name=library, organism=self.organism)

    def enrich(self, genes, gene_sets, background):
        """Hypergeometric test of genes against gene_sets within background."""
        import gseapy as gp

        enr = gp.enrich(
            gene_list=list(genes),
            gene_sets=gene_sets,
            background=list(background),
            outdir=None,
            cutoff=1.0,
            no_plot=True,
        )
        return enr.results

    def prerank(self, ranking, gene_sets):
        """Preranked GSEA over the full ranked list."""
        import gseapy as gp

        res = gp.prerank(
            rnk=ranking,
            gene_sets=gene_sets,
            min_size=self.min_size,
            max_size=self.max_size,
            permutation_num=self.permutation_num,
            seed=self.seed,
            threads=self.threads,
            outdir=None,
            no_plot=True,
            verbose=False,
        )
        return res.res2d


# ============================================================================
# PATHWAY DATABASE
# ============================================================================

KEGG_API_URL = "https://rest.kegg.jp"


def _kegg_request(path, max_retries=3):
    """
    GET a KEGG REST resource with retry logic.

    Returns
    -------
    str
        Response body.
    """
    url = f"{KEGG_API_URL}/{path}"

    for attempt in range(max_retries):
        try:
            response = requests.get(url, timeout=60)
            response.raise_for_status()
            return response.text
        except requests.exceptions.RequestException as e:
            if attempt < max_retries - 1:
                wait_time = 2 ** attempt  # Exponential backoff
                print(f"  Warning: KEGG request failed (attempt {attempt + 1}/{max_retries}), "
                      f"retrying in {wait_time}s...")
                time.sleep(wait_time)
            else:
                raise


def _parse_tsv_pairs(text):
    pairs = []
    for line in text.splitlines():
        if '\t' in line:
            left, right = line.split('\t', 1)
            pairs.append((left.strip(), right.strip()))
    return pairs


class KeggPathways:
    """KEGG pathway membership keyed by Entrez gene id."""

    def __init__(self, organism='hsa'):
        self.organism = organism

    def gene_sets(self):
        """
        Returns
        -------
        dict
            '<pathway id> <pathway name>' -> list of Entrez ids.
        """
        names = dict(_parse_tsv_pairs(_kegg_request(f"list/pathway/{self.organism}")))

        members = {}
        for pathway, gene in _parse_tsv_pairs(_kegg_request(f"link/{self.organism}/pathway")):
            pathway_id = pathway.replace('path:', '')
            entrez = gene.split(':', 1)[-1]
            members.setdefault(pathway_id, []).append(entrez)

        return {
            f"{pathway_id} {names.get(pathway_id, '')}".strip(): genes
            for pathway_id, genes in members.items()
        }
