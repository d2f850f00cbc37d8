# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


from typing import Optional, Sequence

from ..engines.engine import CandidateAlignment
from .layout import infer_chain_type

__all__ = ["gene_label", "annotate_v", "annotate_c"]


def gene_label(subject_id: Optional[str]) -> Optional[str]:
    """
    Gene call for a germline subject, with any species suffix (as used by mixed
    species databases like humouse) removed.
    """
    if subject_id is None:
        return None
    return subject_id.split("__")[0]


def annotate_v(
    alignments: Sequence[CandidateAlignment],
    query_length: int,
    layout=None,
) -> dict:
    """
    Builds the V gene partial annotation from ranked V gene alignments.

    The top-ranked alignment determines the query orientation (`minus_strand`),
    the V gene call and the V gene boundaries on the oriented query. The V gene
    chain type becomes the record's chain type.

    Parameters
    ----------
    alignments : Sequence[CandidateAlignment]
        Ranked V gene alignments for a single query.

    query_length : int
        Length of the query.

    layout : DomainLayoutTable, optional
        Used to look up the V gene chain type. If not provided (or if the gene is
        not in the table), the chain type is inferred from the gene name.

    Returns
    -------
    dict
        Partial annotation. Empty if there are no V gene alignments.

    """
    if not alignments:
        return {}
    top = alignments[0]
    start, end = top.oriented_span(query_length)
    if layout is not None:
        chain_type = layout.chain_type(top.subject_id, "V")
    else:
        chain_type = infer_chain_type(top.subject_id, "V")
    return {
        "minus_strand": top.minus_strand,
        "v_call": gene_label(top.subject_id),
        "v_chain_type": chain_type,
        "chain_type": chain_type,
        "chain_type_to_show": chain_type,
        "v_query_start": start,
        "v_query_end": end,
    }


def annotate_c(
    alignments: Sequence[CandidateAlignment],
    query_length: int,
    minus_strand: bool = False,
    layout=None,
) -> dict:
    """
    Builds the constant region partial annotation.

    The top-ranked C gene alignment on the same strand as the V gene is used. The
    constant region is reported from the start of the C gene alignment to the 3'
    end of the query, since the constant region normally continues past the end of
    the aligned germline segment.

    Returns
    -------
    dict
        Partial annotation. Empty if no C gene alignment is on the V gene strand.

    """
    strand = "-" if minus_strand else "+"
    top = next((a for a in alignments if a.strand == strand), None)
    if top is None:
        return {}
    start, end = top.oriented_span(query_length)
    if layout is not None:
        chain_type = layout.chain_type(top.subject_id, "C")
    else:
        chain_type = infer_chain_type(top.subject_id, "C")
    return {
        "c_call": gene_label(top.subject_id),
        "c_chain_type": chain_type,
        "c_query_start": start,
        "c_query_end": end,
        "c_region_start": start,
        "c_region_end": query_length,
    }
