# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


from typing import Dict, Iterable, List, Optional

from ..annotation.layout import parse_locus
from ..engines.engine import CandidateAlignment, SearchResult

__all__ = [
    "MIN_J_POSITION_DIFF",
    "RELIABLE_J_MATCH_FACTOR",
    "compare_by_score_and_position",
    "rank_alignments",
    "sort_by_evalue",
    "sort_results_by_evalue",
    "append_results",
    "filter_by_sequence_type",
]


# a downstream J gene must start at least this far from an upstream J gene
# before the upstream (5') J gene is preferred on position alone
MIN_J_POSITION_DIFF = 100

# J alignments must be longer than this fraction of the mean germline length to be
# considered for positional ranking, and the 5' J gene must score better than this
# fraction of the competing score
RELIABLE_J_MATCH_FACTOR = 0.5


def compare_by_score_and_position(
    x: CandidateAlignment,
    y: CandidateAlignment,
    provider=None,
    position_aware: bool = False,
    min_position_diff: int = MIN_J_POSITION_DIFF,
    reliable_match_factor: float = RELIABLE_J_MATCH_FACTOR,
) -> int:
    """
    Compares two candidate alignments for ranking.

    The precedence is:

      1. If `position_aware` (used for J genes), both alignments are on the same
         strand, both are reliably long (longer than `reliable_match_factor` times
         the mean length of the two germline genes) and their query starts differ by
         more than `min_position_diff`, the more 5' alignment ranks first as long as
         its score is greater than `reliable_match_factor` times the competing score.
         Rearrangements can leave additional, unused J genes downstream of the
         functional J gene, and those should not win on a marginally higher score.
      2. Higher score.
      3. Longer alignment.
      4. Subject ID (ascending).
      5. Query start, then subject start (ascending).

    Parameters
    ----------
    x, y : CandidateAlignment
        Alignments to compare.

    provider : SequenceCatalog, optional
        Provides germline lengths. Required for positional ranking; if not provided
        (or if either germline length is unknown), positional ranking is skipped.

    position_aware : bool, default False
        Whether to apply positional ranking.

    min_position_diff : int, default 100
        Minimum difference between query starts for positional ranking.

    reliable_match_factor : float, default 0.5
        Fraction used for both the reliable length and the score bound.

    Returns
    -------
    int
        Negative if `x` ranks before `y`, positive if `y` ranks before `x` and
        ``0`` if they are equivalent.

    """
    if position_aware and provider is not None and x.strand == y.strand:
        reliable_length = _reliable_match_length(x, y, provider, reliable_match_factor)
        if (
            reliable_length is not None
            and x.length > reliable_length
            and y.length > reliable_length
            and abs(x.query_start - y.query_start) > min_position_diff
        ):
            upstream, downstream = (x, y) if _is_upstream(x, y) else (y, x)
            if upstream.score > downstream.score * reliable_match_factor:
                return -1 if upstream is x else 1
    if x.score != y.score:
        return -1 if x.score > y.score else 1
    if x.length != y.length:
        return -1 if x.length > y.length else 1
    if x.subject_id != y.subject_id:
        return -1 if x.subject_id < y.subject_id else 1
    if x.query_start != y.query_start:
        return -1 if x.query_start < y.query_start else 1
    if x.subject_start != y.subject_start:
        return -1 if x.subject_start < y.subject_start else 1
    return 0


def rank_alignments(
    alignments: Iterable[CandidateAlignment],
    provider=None,
    gene_class: str = "V",
    max_keep: Optional[int] = None,
) -> List[CandidateAlignment]:
    """
    Ranks, deduplicates and truncates the candidate alignments for a single query
    and gene class.

    Alignments are first put in a total order by score, length, subject ID, query
    start and subject start. For J genes, the most 5' alignment that beats the
    top-scoring alignment on position (see ``compare_by_score_and_position``) is then
    moved to the front. The result does not depend on the input order.

    Parameters
    ----------
    alignments : Iterable[CandidateAlignment]
        Raw candidate alignments.

    provider : SequenceCatalog, optional
        Germline metadata provider, used for positional ranking of J genes.

    gene_class : str, default "V"
        Gene class of the alignments. Positional ranking is only used for J genes.

    max_keep : int, optional
        Maximum number of alignments to retain.

    Returns
    -------
    list
        Ranked alignments.

    """
    ranked = sorted(alignments, key=_ranking_key)
    seen = set()
    deduplicated = []
    for aln in ranked:
        key = (
            aln.subject_id,
            aln.strand,
            aln.query_start,
            aln.query_end,
            aln.subject_start,
            aln.subject_end,
        )
        if key in seen:
            continue
        seen.add(key)
        deduplicated.append(aln)
    if gene_class.upper() == "J" and provider is not None:
        deduplicated = _promote_upstream_j(deduplicated, provider)
    if max_keep is not None:
        deduplicated = deduplicated[:max_keep]
    return deduplicated


def sort_by_evalue(
    alignments: Iterable[CandidateAlignment],
) -> List[CandidateAlignment]:
    """
    Sorts alignments by statistical significance (lowest e-value first). Ties are
    broken by score and subject ID, and alignments without an e-value sort last.
    """
    return sorted(
        alignments,
        key=lambda a: (
            a.evalue is None,
            a.evalue if a.evalue is not None else 0.0,
            -a.score,
            a.subject_id,
            a.query_start,
        ),
    )


def sort_results_by_evalue(
    results: Dict[str, SearchResult],
) -> Dict[str, SearchResult]:
    """
    Sorts the alignments of every query in a result set by e-value.
    """
    return {
        query_id: result.with_alignments(sort_by_evalue(result.alignments))
        for query_id, result in results.items()
    }


def append_results(
    results: Dict[str, Iterable[CandidateAlignment]],
    num_aligns: int,
    gene_class: str,
    final_results: Optional[Dict[str, List[CandidateAlignment]]] = None,
) -> Dict[str, List[CandidateAlignment]]:
    """
    Appends the alignments of a single gene class to the final (merged) results.

    Parameters
    ----------
    results : dict
        Ranked alignments, keyed by query ID.

    num_aligns : int
        Maximum number of alignments of this gene class to retain per query.

    gene_class : str
        Gene class tag attached to each alignment.

    final_results : dict, optional
        Merged results of previously appended gene classes. Not modified.

    Returns
    -------
    dict
        New merged results, keyed by query ID.

    """
    merged = {k: list(v) for k, v in (final_results or {}).items()}
    for query_id, alignments in results.items():
        if isinstance(alignments, SearchResult):
            alignments = alignments.alignments
        tagged = [a.tagged(gene_class) for a in list(alignments)[:num_aligns]]
        merged.setdefault(query_id, []).extend(tagged)
    return merged


def filter_by_sequence_type(
    alignments: Iterable[CandidateAlignment], sequence_type: str
) -> List[CandidateAlignment]:
    """
    Removes alignments to germline genes from the wrong receptor type (for example,
    TCR genes when annotating antibodies). Genes with non-IMGT names are retained.
    """
    prefix = "IG" if sequence_type == "ig" else "TR"
    filtered = []
    for aln in alignments:
        locus = parse_locus(aln.subject_id)
        if locus is None or locus.startswith(prefix):
            filtered.append(aln)
    return filtered


def _is_upstream(x: CandidateAlignment, y: CandidateAlignment) -> bool:
    # the 5' end of a minus-strand query is at the end of the plus strand
    if x.minus_strand:
        return x.query_start > y.query_start
    return x.query_start < y.query_start


def _reliable_match_length(
    x: CandidateAlignment, y: CandidateAlignment, provider, factor: float
) -> Optional[float]:
    x_len = provider.length(x.subject_id)
    y_len = provider.length(y.subject_id)
    if x_len is None or y_len is None:
        return None
    return factor * (x_len + y_len) / 2


def _ranking_key(aln: CandidateAlignment) -> tuple:
    return (-aln.score, -aln.length, aln.subject_id, aln.query_start, aln.subject_start)


def _promote_upstream_j(
    ranked: List[CandidateAlignment], provider
) -> List[CandidateAlignment]:
    if len(ranked) < 2:
        return ranked
    leader = ranked[0]
    upstream = [
        aln
        for aln in ranked[1:]
        if compare_by_score_and_position(
            aln, leader, provider=provider, position_aware=True
        )
        < 0
    ]
    if not upstream:
        return ranked
    # ties keep the score order, so the first most 5' candidate wins
    if leader.minus_strand:
        promoted = max(upstream, key=lambda a: a.query_start)
    else:
        promoted = min(upstream, key=lambda a: a.query_start)
    return [promoted] + [a for a in ranked if a is not promoted]
