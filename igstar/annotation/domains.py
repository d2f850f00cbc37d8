# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


from typing import Iterable, Optional

from ..engines.engine import CandidateAlignment
from .genes import gene_label
from .positions import project_subject_position
from .record import DOMAIN_FIELDS, SUBJECT_DOMAIN_FIELDS

__all__ = ["annotate_domains", "select_domain_alignment", "is_monotonic"]


def annotate_domains(
    v_alignment: Optional[CandidateAlignment],
    query_length: int,
    layout,
    j_alignment: Optional[CandidateAlignment] = None,
    j_subject_length: Optional[int] = None,
    fallback_alignments: Iterable[CandidateAlignment] = (),
    chain_type: Optional[str] = None,
) -> dict:
    """
    Maps germline domain boundaries onto the query.

    Parameters
    ----------
    v_alignment : CandidateAlignment
        Top-ranked V gene alignment.

    query_length : int
        Length of the query.

    layout : DomainLayoutTable
        Germline domain layouts and frame offsets.

    j_alignment : CandidateAlignment, optional
        Selected J gene alignment. Required for CDR3 end and FWR4.

    j_subject_length : int, optional
        Length of the J germline gene. Used to detect alignments that reach the end
        of the germline, in which case the bases past the last complete J codon are
        excluded from FWR4.

    fallback_alignments : Iterable[CandidateAlignment], optional
        Ranked alignments against the domain database. Used when the V gene is not in
        the layout table; the first alignment whose germline gene is in the table and
        has a matching chain type is used instead.

    chain_type : str, optional
        V gene chain type, used to filter `fallback_alignments`.

    Returns
    -------
    dict
        Partial annotation. If no usable domain layout is found, domain and frame
        fields are omitted (and therefore remain ``None``).

    """
    if v_alignment is None:
        return {}
    partial = {}

    domain_aln = select_domain_alignment(
        v_alignment, layout, fallback_alignments, chain_type
    )
    if domain_aln is not None:
        boundaries = layout.get_domain_info(domain_aln.subject_id)
        query_boundaries = _project_boundaries(domain_aln, boundaries, query_length)
        if is_monotonic(query_boundaries):
            partial["domain_subject"] = gene_label(domain_aln.subject_id)
            partial.update(dict(zip(DOMAIN_FIELDS, query_boundaries)))
            partial.update(dict(zip(SUBJECT_DOMAIN_FIELDS, boundaries)))

    # CDR3 and FWR4
    v_end = v_alignment.oriented_span(query_length)[1]
    fwr3_end = partial.get("fwr3_end")
    cdr3_start = fwr3_end if fwr3_end is not None else v_end
    partial["cdr3_start"] = cdr3_start
    if j_alignment is not None:
        partial.update(
            _annotate_fwr4(
                j_alignment, cdr3_start, query_length, layout, j_subject_length
            )
        )

    # frames
    if domain_aln is not None:
        partial.update(_annotate_frames(domain_aln, j_alignment, query_length, layout))
    return partial


def select_domain_alignment(
    v_alignment: CandidateAlignment,
    layout,
    fallback_alignments: Iterable[CandidateAlignment] = (),
    chain_type: Optional[str] = None,
) -> Optional[CandidateAlignment]:
    """
    Selects the alignment used for domain annotation: the V gene alignment if its
    germline gene has a domain layout, otherwise the first domain database alignment
    on the same strand whose germline gene has a domain layout and a compatible
    chain type.
    """
    if layout is None:
        return None
    if v_alignment.subject_id in layout:
        return v_alignment
    for aln in fallback_alignments:
        if aln.strand != v_alignment.strand or aln.subject_id not in layout:
            continue
        fallback_chain = layout.chain_type(aln.subject_id, "V")
        if chain_type is None or fallback_chain is None or fallback_chain == chain_type:
            return aln
    return None


def is_monotonic(boundaries: Iterable[Optional[int]]) -> bool:
    """
    Whether the known (non-``None``) boundaries are non-decreasing.
    """
    known = [b for b in boundaries if b is not None]
    return all(a <= b for a, b in zip(known, known[1:]))


def _project_boundaries(
    alignment: CandidateAlignment, boundaries, query_length: int
) -> list:
    """
    Projects the 10 subject domain boundaries onto the oriented query.

    FWR1 start and FWR3 end are extended past the aligned region (up to the ends of
    the query). Other boundaries are clamped to the aligned region, and regions that
    lie entirely outside the aligned region are ``None``.
    """
    q_start, q_end = alignment.oriented_span(query_length)
    s_start, s_end = alignment.subject_start, alignment.subject_end
    last_region = len(boundaries) // 2 - 1
    projected = []
    for region in range(len(boundaries) // 2):
        start = boundaries[2 * region]
        end = boundaries[2 * region + 1]
        if start is None or end is None or end <= s_start or start >= s_end:
            projected.extend([None, None])
            continue
        if start < s_start:
            if region == 0:
                region_start = max(0, q_start - (s_start - start))
            else:
                region_start = q_start
        else:
            region_start = project_subject_position(start, alignment, query_length)
        if end > s_end:
            if region == last_region:
                region_end = min(query_length, q_end + (end - s_end))
            else:
                region_end = q_end
        else:
            region_end = project_subject_position(end, alignment, query_length)
        projected.extend([region_start, region_end])
    return projected


def _annotate_fwr4(
    j_alignment: CandidateAlignment,
    cdr3_start: Optional[int],
    query_length: int,
    layout,
    j_subject_length: Optional[int],
) -> dict:
    partial = {}
    if layout is None:
        return partial
    cdr3_end_subject = layout.get_j_cdr3_end(j_alignment.subject_id)
    if cdr3_end_subject is None or cdr3_end_subject < j_alignment.subject_start:
        return partial
    j_start, j_end = j_alignment.oriented_span(query_length)
    cdr3_end = project_subject_position(cdr3_end_subject, j_alignment, query_length)
    cdr3_end = min(max(cdr3_end, j_start), j_end)
    if cdr3_start is not None and cdr3_end < cdr3_start:
        return partial
    partial["cdr3_end"] = cdr3_end
    fwr4_end = j_end
    extra = layout.get_fwr4_extra_bases(j_alignment.subject_id)
    if (
        extra
        and j_subject_length is not None
        and j_alignment.subject_end >= j_subject_length
    ):
        fwr4_end = max(cdr3_end, j_end - extra)
        partial["fwr4_extra_bases"] = extra
    partial["fwr4_start"] = cdr3_end
    partial["fwr4_end"] = fwr4_end
    return partial


def _annotate_frames(
    v_alignment: CandidateAlignment,
    j_alignment: Optional[CandidateAlignment],
    query_length: int,
    layout,
) -> dict:
    v_offset = layout.get_frame_offset(v_alignment.subject_id)
    if v_offset is None:
        return {}
    q_start, q_end = v_alignment.oriented_span(query_length)
    s_start, s_end = v_alignment.subject_start, v_alignment.subject_end
    frames = {
        "v_frame_start": q_start + (3 - (s_start - v_offset) % 3) % 3,
        "v_end_frame_start": (q_end - 1) - ((s_end - 1 - v_offset) % 3),
    }
    if j_alignment is not None:
        j_offset = layout.get_frame_offset(j_alignment.subject_id)
        if j_offset is not None:
            j_start = j_alignment.oriented_span(query_length)[0]
            frames["j_frame_start"] = (
                j_start + (3 - (j_alignment.subject_start - j_offset) % 3) % 3
            )
    return frames
