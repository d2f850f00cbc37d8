# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import math
from dataclasses import dataclass, replace
from typing import FrozenSet, Optional, Sequence, Tuple

from ..engines.engine import CandidateAlignment
from .genes import gene_label
from .layout import infer_chain_type

__all__ = [
    "CHAIN_INTERPRETATIONS",
    "DJResolution",
    "resolve_dj",
    "resolve_d_only",
    "annotate_dj",
]


# V chain type -> interpretations of (chain type to show, J chain types, D chain types,
# whether the locus has D genes)
CHAIN_INTERPRETATIONS = {
    "VH": [("VH", frozenset(["JH"]), frozenset(["DH"]), True)],
    "VK": [("VK", frozenset(["JK"]), None, False)],
    "VL": [("VL", frozenset(["JL"]), None, False)],
    "VB": [("VB", frozenset(["JB"]), frozenset(["DB"]), True)],
    "VG": [("VG", frozenset(["JG"]), None, False)],
    # TRA and TRD share V genes, so both interpretations are tried. alpha is listed
    # first and wins ties
    "VA": [
        ("VA", frozenset(["JA"]), None, False),
        ("VD", frozenset(["JD"]), frozenset(["DD"]), True),
    ],
    "VD": [
        ("VA", frozenset(["JA"]), None, False),
        ("VD", frozenset(["JD"]), frozenset(["DD"]), True),
    ],
}


@dataclass(frozen=True)
class DJResolution:
    """
    Outcome of D/J resolution for a single query.

    Attributes
    ----------
    d, j : CandidateAlignment or None
        Selected D and J gene alignments.

    chain_type_to_show : str or None
        Chain type implied by the selected interpretation (differs from the V gene
        chain type only for TRA/TRD V genes).

    needs_no_overlap_d_search : bool
        No D gene fit between the V and J genes; a D gene search restricted to the
        V-J junction should be issued.

    d_allowed : bool
        Whether the selected interpretation has D genes.

    d_chain_types : frozenset or None
        D gene chain types allowed by the selected interpretation. ``None`` allows
        any D gene.

    """

    d: Optional[CandidateAlignment] = None
    j: Optional[CandidateAlignment] = None
    chain_type_to_show: Optional[str] = None
    needs_no_overlap_d_search: bool = False
    d_allowed: bool = True
    d_chain_types: Optional[FrozenSet[str]] = None


def resolve_dj(
    d_candidates: Sequence[CandidateAlignment],
    j_candidates: Sequence[CandidateAlignment],
    v_end: Optional[int],
    chain_type: Optional[str],
    minus_strand: bool,
    query_length: int,
    layout=None,
    detect_overlap: bool = False,
    overlap_tolerance: int = 0,
) -> DJResolution:
    """
    Selects a mutually consistent D and J gene for a single query.

    The J gene is chosen first: the highest-ranked J gene alignment on the V gene
    strand that is compatible with the V gene chain type, ends past the end of the V
    gene and (unless `detect_overlap` is set) does not overlap the V gene by more
    than `overlap_tolerance` bases. The D gene is the highest-ranked compatible D
    gene alignment that lies between the V and J genes, again allowing
    `overlap_tolerance` overlapping bases on either side (or any overlap if
    `detect_overlap` is set).

    V genes shared by the TRA and TRD loci are resolved under both an alpha
    interpretation (TRAJ, no D gene) and a delta interpretation (TRDJ and TRDD). The
    interpretation with the better-ranked J gene wins; ties and queries without any
    J gene are reported as alpha.

    Parameters
    ----------
    d_candidates, j_candidates : Sequence[CandidateAlignment]
        Ranked D and J gene alignments.

    v_end : int or None
        End of the V gene on the oriented query. If ``None``, D and J genes are not
        positionally constrained by the V gene.

    chain_type : str or None
        Chain type of the V gene (``"VH"``, ``"VK"``, etc.). Unknown chain types are
        compatible with all D and J genes.

    minus_strand : bool
        Whether the V gene aligned to the minus strand of the query.

    query_length : int
        Length of the query.

    layout : DomainLayoutTable, optional
        Source of J gene chain types. Chain types are inferred from gene names if
        not provided.

    detect_overlap : bool, default False
        Allow any overlap between V, D and J genes.

    overlap_tolerance : int, default 0
        Overlapping bases tolerated when `detect_overlap` is ``False``.

    Returns
    -------
    DJResolution

    """
    tolerance = math.inf if detect_overlap else overlap_tolerance
    strand = "-" if minus_strand else "+"
    interpretations = CHAIN_INTERPRETATIONS.get(
        chain_type, [(chain_type, None, None, True)]
    )

    best_rank, best = None, None
    for label, j_types, d_types, d_allowed in interpretations:
        j_rank, j = _select_j(
            j_candidates, strand, v_end, query_length, j_types, layout, tolerance
        )
        d = None
        if d_allowed:
            d = _select_d(
                d_candidates, strand, v_end, j, query_length, d_types, tolerance
            )
        resolution = DJResolution(
            d=d,
            j=j,
            chain_type_to_show=label,
            needs_no_overlap_d_search=d_allowed and d is None and not detect_overlap,
            d_allowed=d_allowed,
            d_chain_types=d_types,
        )
        # a strictly better J rank is required to displace an earlier interpretation
        if best is None or (
            j_rank is not None and (best_rank is None or j_rank < best_rank)
        ):
            best_rank, best = j_rank, resolution
    return best


def resolve_d_only(
    d_candidates: Sequence[CandidateAlignment],
    resolution: DJResolution,
    v_end: Optional[int],
    minus_strand: bool,
    query_length: int,
) -> DJResolution:
    """
    Selects a D gene from a search restricted to the V-J junction. The D gene
    must lie entirely between the V and J genes. The J gene and chain type of
    `resolution` are retained.
    """
    if not resolution.d_allowed:
        return resolution
    strand = "-" if minus_strand else "+"
    d = _select_d(
        d_candidates,
        strand,
        v_end,
        resolution.j,
        query_length,
        resolution.d_chain_types,
        0,
    )
    return replace(resolution, d=d, needs_no_overlap_d_search=False)


def annotate_dj(
    resolution: DJResolution,
    query_length: int,
    layout=None,
) -> dict:
    """
    Builds the D/J partial annotation from a resolution.

    Parameters
    ----------
    resolution : DJResolution
        Resolved D and J genes.

    query_length : int
        Length of the query.

    layout : DomainLayoutTable, optional
        Source of J gene chain types and D gene reading frames.

    Returns
    -------
    dict
        Partial annotation. Only fields that could be determined are included.

    """
    partial = {}
    if resolution.chain_type_to_show is not None:
        partial["chain_type_to_show"] = resolution.chain_type_to_show
    j = resolution.j
    if j is not None:
        start, end = j.oriented_span(query_length)
        partial["j_call"] = gene_label(j.subject_id)
        partial["j_chain_type"] = _chain_type(j.subject_id, "J", layout)
        partial["j_query_start"] = start
        partial["j_query_end"] = end
    d = resolution.d
    if d is not None:
        start, end = d.oriented_span(query_length)
        partial["d_call"] = gene_label(d.subject_id)
        partial["d_chain_type"] = _chain_type(d.subject_id, "D", layout)
        partial["d_query_start"] = start
        partial["d_query_end"] = end
        d_frame = layout.get_d_frame(d.subject_id) if layout is not None else None
        if d_frame is not None:
            partial["d_frame_start"] = start + (3 - (d.subject_start - d_frame) % 3) % 3
    return partial


def _chain_type(subject_id: str, gene_class: str, layout) -> Optional[str]:
    if layout is not None:
        return layout.chain_type(subject_id, gene_class)
    return infer_chain_type(subject_id, gene_class)


def _compatible(chain_type: Optional[str], allowed: Optional[FrozenSet[str]]) -> bool:
    if allowed is None or chain_type is None:
        return True
    return chain_type in allowed


def _select_j(
    candidates: Sequence[CandidateAlignment],
    strand: str,
    v_end: Optional[int],
    query_length: int,
    allowed: Optional[FrozenSet[str]],
    layout,
    tolerance: float,
) -> Tuple[Optional[int], Optional[CandidateAlignment]]:
    for rank, aln in enumerate(candidates):
        if aln.strand != strand:
            continue
        if not _compatible(_chain_type(aln.subject_id, "J", layout), allowed):
            continue
        start, end = aln.oriented_span(query_length)
        if v_end is not None and (end <= v_end or start < v_end - tolerance):
            continue
        return rank, aln
    return None, None


def _select_d(
    candidates: Sequence[CandidateAlignment],
    strand: str,
    v_end: Optional[int],
    j: Optional[CandidateAlignment],
    query_length: int,
    allowed: Optional[FrozenSet[str]],
    tolerance: float,
) -> Optional[CandidateAlignment]:
    lower = v_end - tolerance if v_end is not None else -math.inf
    if j is not None:
        upper = j.oriented_span(query_length)[0] + tolerance
    else:
        upper = math.inf
    for aln in candidates:
        if aln.strand != strand:
            continue
        if not _compatible(infer_chain_type(aln.subject_id, "D"), allowed):
            continue
        start, end = aln.oriented_span(query_length)
        if start >= lower and end <= upper and start < end:
            return aln
    return None
