"""
Functional enrichment for the bulk RNA-seq pipeline.

For one differential expression result table, runs over-representation
analysis (significant genes vs. all tested genes) and preranked GSEA
(whole ranked list) against GO namespaces by gene symbol, and against
KEGG pathways by Entrez id.
"""

import copy
import os

import pandas as pd

from .engines import GseapyEngine, KeggPathways, MyGeneAnnotator
from .errors import EnrichmentError
from .utils import save_data

DEFAULT_ONTOLOGIES = {
    'BP': 'GO_Biological_Process_2023',
    'MF': 'GO_Molecular_Function_2023',
    'CC': 'GO_Cellular_Component_2023',
}


def ranked_gene_list(results, id_col='gene', score_col='log2FoldChange'):
    """
    Build a ranked gene list for preranked enrichment.

    Drops genes with a missing score, sorts by score descending and keeps
    the first (highest scoring) entry for duplicated ids.

    Returns
    -------
    pd.Series
        id -> score, sorted descending.

    Example
    -------
    >>> df = pd.DataFrame({'gene': list('ABCD'),
    ...                    'log2FoldChange': [2.0, None, -1.5, 0.5]})
    >>> ranked_gene_list(df).to_dict()
    {'A': 2.0, 'D': 0.5, 'C': -1.5}
    """
    table = results[[id_col, score_col]].dropna()
    table = table.sort_values(score_col, ascending=False, kind='mergesort')
    table = table.drop_duplicates(subset=id_col, keep='first')
    ranking = pd.Series(table[score_col].values, index=table[id_col].values, name=score_col)
    ranking.index.name = id_col
    return ranking


def _translate(ranking, mapping):
    """Re-key a ranking through mapping; unmapped ids are dropped."""
    translated = ranking[ranking.index.isin(list(mapping.keys()))]
    translated.index = [mapping[g] for g in translated.index]
    translated = translated[~translated.index.duplicated(keep='first')]
    return translated


def _run_branch(kind, namespace, contrast_name, genes, engine_call, min_genes):
    """Run one enrichment test; too few genes or no usable gene sets give an empty table."""
    label = f"{kind} {namespace} ({contrast_name})"
    if len(genes) < min_genes:
        print(f"  Warning: {label}: only {len(genes)} genes, skipping")
        return pd.DataFrame()

    try:
        result = engine_call()
    except (ValueError, LookupError) as e:
        print(f"  Warning: {label}: {e}")
        return pd.DataFrame()

    if result is None:
        return pd.DataFrame()
    print(f"  {label}: {len(result)} terms tested")
    return result


def _fetch_gene_sets(namespace, contrast_name, fetch):
    """Load one gene-set collection, naming the namespace and contrast on failure."""
    try:
        return fetch()
    except Exception as e:
        raise EnrichmentError(
            f"Could not load gene sets for {namespace} ({contrast_name}): {e}"
        ) from e


def enrich_de(data, contrast_name, engine=None, annotator=None, pathway_db=None,
              alpha=None, log2fc_threshold=None):
    """
    Run GO and KEGG enrichment for one contrast.

    For each GO namespace (BP, MF, CC) and for KEGG pathways:
    - ORA: genes with padj < alpha and |log2FC| > threshold, against all
      tested genes as background
    - GSEA: preranked test over all genes ranked by log2 fold change

    Parameters
    ----------
    data : dict
        Output from stat_de().
    contrast_name : str
        Key into data['de_results'], e.g. 'knockout_status_KO_vs_WT'.
    engine : object, optional
        Engine with gene_sets(), enrich() and prerank(). Defaults to GseapyEngine.
    annotator : object, optional
        Object with to_entrez(gene_ids). Defaults to MyGeneAnnotator.
    pathway_db : object, optional
        Object with gene_sets() keyed by Entrez id. Defaults to KeggPathways.
    alpha, log2fc_threshold : float, optional
        Foreground thresholds (default: stats_params from stat_de()).

    Returns
    -------
    dict
        Updated data dictionary with
        data['enrichment'][contrast_name][(kind, namespace)] -> DataFrame,
        kind in {'ORA', 'GSEA'}, namespace in {'BP', 'MF', 'CC', 'KEGG'}.

    Example
    -------
    >>> data = enrich_de(data, 'knockout_status_KO_vs_WT')
    >>> data['enrichment']['knockout_status_KO_vs_WT'][('GSEA', 'BP')].head()
    """

    print("\n" + "="*80)
    print(f"FUNCTIONAL ENRICHMENT: {contrast_name}")
    print("="*80)

    if contrast_name not in data['de_results']:
        raise KeyError(
            f"No results for contrast '{contrast_name}'. "
            f"Available: {list(data['de_results'].keys())}"
        )

    config = data['config']
    enr_config = config.get('enrichment', {})
    stats_params = data['stats_params']
    results = data['de_results'][contrast_name]

    alpha = stats_params['alpha'] if alpha is None else alpha
    if log2fc_threshold is None:
        log2fc_threshold = stats_params['log2fc_threshold']
    min_genes = enr_config.get('min_genes', 5)
    ontologies = enr_config.get('ontologies', DEFAULT_ONTOLOGIES)

    if engine is None:
        engine = GseapyEngine(
            organism=enr_config.get('organism', 'Human'),
            min_size=enr_config.get('min_size', 15),
            max_size=enr_config.get('max_size', 500),
            permutation_num=enr_config.get('permutation_num', 1000),
            seed=config.get('statistics', {}).get('seed', 42),
        )
    if annotator is None:
        ann_config = config.get('annotation', {})
        annotator = MyGeneAnnotator(
            species=ann_config.get('species', 'human'),
            scopes=ann_config.get('scopes', 'ensembl.gene'),
        )
    if pathway_db is None:
        pathway_db = KeggPathways(organism=enr_config.get('kegg_organism', 'hsa'))

    # =========================================================================
    # 1. GENE LISTS AND GENE-SET COLLECTIONS
    # =========================================================================
    print(f"\n[1/3] Building gene lists and loading gene sets...")

    ranking = ranked_gene_list(results)
    tested = results[results['padj'].notna()]
    universe = list(dict.fromkeys(tested['gene']))
    foreground = list(dict.fromkeys(
        tested.loc[(tested['padj'] < alpha) & (tested['log2FoldChange'].abs() > log2fc_threshold), 'gene']
    ))

    print(f"  Ranked genes: {len(ranking)}")
    print(f"  Universe (tested): {len(universe)}")
    print(f"  Foreground (padj < {alpha}, |log2FC| > {log2fc_threshold}): {len(foreground)}")

    names = data.get('gene_annotation', pd.DataFrame(columns=['name']))
    symbols = {
        g: n for g, n in names.get('name', pd.Series(dtype=str)).items()
        if isinstance(n, str) and n
    }

    sym_ranking = _translate(ranking, symbols)
    sym_universe = list(dict.fromkeys(symbols[g] for g in universe if g in symbols))
    sym_foreground = list(dict.fromkeys(symbols[g] for g in foreground if g in symbols))
    print(f"  {len(sym_ranking)}/{len(ranking)} ranked genes have a symbol")

    entrez = annotator.to_entrez(list(ranking.index))
    print(f"  {len(entrez)}/{len(ranking)} genes mapped to Entrez ids "
          f"(unmapped genes are left out of pathway tests)")

    ez_ranking = _translate(ranking, entrez)
    ez_universe = list(dict.fromkeys(entrez[g] for g in universe if g in entrez))
    ez_foreground = list(dict.fromkeys(entrez[g] for g in foreground if g in entrez))

    # All collections are loaded before any table is written
    go_sets = {}
    if max(len(sym_foreground), len(sym_ranking)) >= min_genes:
        for namespace, library in ontologies.items():
            go_sets[namespace] = _fetch_gene_sets(
                namespace, contrast_name, lambda: engine.gene_sets(library)
            )

    pathway_sets = None
    if max(len(ez_foreground), len(ez_ranking)) >= min_genes:
        pathway_sets = _fetch_gene_sets('KEGG', contrast_name, pathway_db.gene_sets)
    else:
        print(f"  Too few Entrez-mapped genes, KEGG pathways not loaded")

    output_dir = data['output_dirs']['enrichment']
    os.makedirs(output_dir, exist_ok=True)
    enrichment = {}

    def _save(kind, namespace, table):
        enrichment[(kind, namespace)] = table
        path = os.path.join(output_dir, f'{contrast_name}_{kind}_{namespace}.csv')
        table.to_csv(path, index=False)
        print(f"    > Saved: {os.path.basename(path)}")

    # =========================================================================
    # 2. GO NAMESPACES (BY SYMBOL)
    # =========================================================================
    print(f"\n[2/3] GO enrichment by gene symbol...")

    for namespace in ontologies:
        gene_sets = go_sets.get(namespace)

        ora = _run_branch('ORA', namespace, contrast_name, sym_foreground,
                          lambda: engine.enrich(sym_foreground, gene_sets, sym_universe), min_genes)
        _save('ORA', namespace, ora)

        gsea = _run_branch('GSEA', namespace, contrast_name, sym_ranking,
                           lambda: engine.prerank(sym_ranking, gene_sets), min_genes)
        _save('GSEA', namespace, gsea)

    # =========================================================================
    # 3. KEGG PATHWAYS (BY ENTREZ ID)
    # =========================================================================
    print(f"\n[3/3] Pathway enrichment by Entrez id...")

    ora = _run_branch('ORA', 'KEGG', contrast_name, ez_foreground,
                      lambda: engine.enrich(ez_foreground, pathway_sets, ez_universe), min_genes)
    _save('ORA', 'KEGG', ora)

    gsea = _run_branch('GSEA', 'KEGG', contrast_name, ez_ranking,
                       lambda: engine.prerank(ez_ranking, pathway_sets), min_genes)
    _save('GSEA', 'KEGG', gsea)

    # =========================================================================
    # 4. UPDATE DATA DICTIONARY
    # =========================================================================
    data_updated = copy.copy(data)
    data_updated['enrichment'] = dict(data.get('enrichment', {}))
    data_updated['enrichment'][contrast_name] = enrichment

    output_path = os.path.join(config['data_paths']['output_dir'], 'data_after_enrich.pkl')
    save_data(data_updated, output_path)

    print("\n" + "="*80)
    print("ENRICHMENT COMPLETE")
    print("="*80)
    for (kind, namespace), table in enrichment.items():
        print(f"  {kind:5} {namespace:5} {len(table)} terms")
    print("\n" + "="*80 + "\n")

    return data_updated
