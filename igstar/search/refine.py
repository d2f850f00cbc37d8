# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

import abutils

from ..engines.engine import CandidateAlignment

__all__ = [
    "extend_5prime",
    "extend_3prime",
    "screen_by_length",
    "focus_on_v",
]


def extend_5prime(
    alignments: Iterable[CandidateAlignment],
    provider=None,
    query_length: int = 0,
    max_extension: int = 30,
    query_sequence: Optional[str] = None,
) -> List[CandidateAlignment]:
    """
    Extends V gene alignments toward the 5' end of the germline gene.

    Local alignments frequently stop a few bases short of the query's 5' end when
    the first few bases are mismatched. The extension closes that gap by
    ``min(unaligned 5' query bases, unaligned 5' subject bases)`` as long as the
    extension is no longer than `max_extension`.

    Parameters
    ----------
    alignments : Iterable[CandidateAlignment]
        V gene alignments for a single query.

    provider : SequenceCatalog, optional
        Germline sequence provider. If the germline sequence (and `query_sequence`)
        are available, aligned strings are extended with the actual bases. Otherwise,
        aligned strings are dropped and downstream projection is linear.

    query_length : int
        Length of the complete query.

    max_extension : int, default 30
        Longest extension that will be applied.

    query_sequence : str, optional
        Plus-strand query sequence.

    Returns
    -------
    list
        Extended alignments. Alignments that can't be extended are returned unchanged.

    """
    extended = []
    for aln in alignments:
        if aln.minus_strand:
            unaligned = query_length - aln.query_end
        else:
            unaligned = aln.query_start
        ext = min(unaligned, aln.subject_start)
        if ext <= 0 or ext > max_extension:
            extended.append(aln)
            continue
        if aln.minus_strand:
            q_start, q_end = aln.query_start, aln.query_end + ext
            added_query = _oriented_bases(query_sequence, aln.query_end, q_end, True)
        else:
            q_start, q_end = aln.query_start - ext, aln.query_end
            added_query = _oriented_bases(
                query_sequence, q_start, aln.query_start, False
            )
        s_start = aln.subject_start - ext
        added_subject = _subject_bases(
            provider, aln.subject_id, s_start, aln.subject_start
        )
        aligned_query, aligned_subject = _extended_strings(
            aln, added_query, added_subject, prepend=True
        )
        extended.append(
            replace(
                aln,
                query_start=q_start,
                query_end=q_end,
                subject_start=s_start,
                length=aln.length + ext,
                aligned_query=aligned_query,
                aligned_subject=aligned_subject,
            )
        )
    return extended


def extend_3prime(
    alignments: Iterable[CandidateAlignment],
    provider=None,
    query_length: int = 0,
    max_extension: int = 30,
    query_sequence: Optional[str] = None,
) -> List[CandidateAlignment]:
    """
    Extends J gene alignments toward the 3' end of the germline gene. The extension
    is bounded by the unaligned 3' query bases, the unaligned 3' germline bases
    (which requires the germline length from `provider`) and `max_extension`.

    See ``extend_5prime`` for a description of the parameters.
    """
    extended = []
    for aln in alignments:
        subject_length = (
            provider.length(aln.subject_id) if provider is not None else None
        )
        if subject_length is None:
            extended.append(aln)
            continue
        if aln.minus_strand:
            unaligned = aln.query_start
        else:
            unaligned = query_length - aln.query_end
        ext = min(unaligned, subject_length - aln.subject_end)
        if ext <= 0 or ext > max_extension:
            extended.append(aln)
            continue
        if aln.minus_strand:
            q_start, q_end = aln.query_start - ext, aln.query_end
            added_query = _oriented_bases(
                query_sequence, q_start, aln.query_start, True
            )
        else:
            q_start, q_end = aln.query_start, aln.query_end + ext
            added_query = _oriented_bases(query_sequence, aln.query_end, q_end, False)
        s_end = aln.subject_end + ext
        added_subject = _subject_bases(provider, aln.subject_id, aln.subject_end, s_end)
        aligned_query, aligned_subject = _extended_strings(
            aln, added_query, added_subject, prepend=False
        )
        extended.append(
            replace(
                aln,
                query_start=q_start,
                query_end=q_end,
                subject_end=s_end,
                length=aln.length + ext,
                aligned_query=aligned_query,
                aligned_subject=aligned_subject,
            )
        )
    return extended


def screen_by_length(
    alignments: Iterable[CandidateAlignment], min_length: int = 0
) -> List[CandidateAlignment]:
    """
    Removes alignments shorter than `min_length`.
    """
    if not min_length:
        return list(alignments)
    return [a for a in alignments if a.length >= min_length]


def focus_on_v(
    alignments: Iterable[CandidateAlignment], layout
) -> List[CandidateAlignment]:
    """
    Trims V gene alignments so that they end at the end of FWR3 on the germline gene,
    removing any part of the alignment that extends into CDR3.

    Alignments to germline genes without a known FWR3 end are returned unchanged, as
    are alignments that would be trimmed away completely.
    """
    focused = []
    for aln in alignments:
        boundaries = (
            layout.get_domain_info(aln.subject_id) if layout is not None else None
        )
        fwr3_end = boundaries[9] if boundaries is not None else None
        if fwr3_end is None or aln.subject_end <= fwr3_end:
            focused.append(aln)
            continue
        overhang = aln.subject_end - fwr3_end
        if aln.has_alignment_strings:
            aligned_query, aligned_subject, query_trim, columns = _trim_aligned_end(
                aln.aligned_query, aln.aligned_subject, overhang
            )
        else:
            aligned_query, aligned_subject = None, None
            query_trim, columns = overhang, overhang
        if query_trim >= aln.query_end - aln.query_start or columns >= aln.length:
            focused.append(aln)
            continue
        # the 3' end of a minus-strand alignment is at the plus-strand query start
        if aln.minus_strand:
            q_start, q_end = aln.query_start + query_trim, aln.query_end
        else:
            q_start, q_end = aln.query_start, aln.query_end - query_trim
        focused.append(
            replace(
                aln,
                query_start=q_start,
                query_end=q_end,
                subject_end=fwr3_end,
                length=aln.length - columns,
                aligned_query=aligned_query,
                aligned_subject=aligned_subject,
            )
        )
    return focused


def _oriented_bases(
    query_sequence: Optional[str], start: int, end: int, minus_strand: bool
) -> Optional[str]:
    if query_sequence is None:
        return None
    bases = query_sequence[start:end]
    return abutils.tl.reverse_complement(bases) if minus_strand else bases


def _subject_bases(provider, subject_id: str, start: int, end: int) -> Optional[str]:
    if provider is None:
        return None
    sequence = provider.sequence(subject_id)
    if sequence is None:
        return None
    return sequence[start:end]


def _extended_strings(
    aln: CandidateAlignment,
    added_query: Optional[str],
    added_subject: Optional[str],
    prepend: bool,
) -> Tuple[Optional[str], Optional[str]]:
    if not aln.has_alignment_strings or added_query is None or added_subject is None:
        return None, None
    if prepend:
        return added_query + aln.aligned_query, added_subject + aln.aligned_subject
    return aln.aligned_query + added_query, aln.aligned_subject + added_subject


def _trim_aligned_end(
    aligned_query: str, aligned_subject: str, subject_bases: int
) -> Tuple[str, str, int, int]:
    """
    Removes alignment columns from the 3' end until `subject_bases` subject
    residues have been removed. Returns the trimmed strings, the number of query
    residues removed and the number of columns removed.
    """
    removed_subject = 0
    removed_query = 0
    columns = 0
    for q, s in zip(reversed(aligned_query), reversed(aligned_subject)):
        if removed_subject == subject_bases:
            break
        columns += 1
        if s != "-":
            removed_subject += 1
        if q != "-":
            removed_query += 1
    # trailing query insertions no longer belong to the alignment
    while columns < len(aligned_subject) and aligned_subject[-(columns + 1)] == "-":
        columns += 1
        removed_query += 1
    end = len(aligned_query) - columns
    return aligned_query[:end], aligned_subject[:end], removed_query, columns
