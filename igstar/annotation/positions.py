# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


from typing import Optional

from ..engines.engine import CandidateAlignment

__all__ = [
    "get_position_from_aligned_reference",
    "project_subject_position",
]


def get_position_from_aligned_reference(
    position: int,
    aligned_sequence: str,
    aligned_reference: str,
) -> Optional[int]:
    """
    Get the query position from an aligned reference.

    Parameters
    ----------
    position : int
        Position in the reference, relative to the start of the alignment (0-based).

    aligned_sequence : str
        The aligned query sequence.

    aligned_reference : str
        The aligned reference sequence.

    Returns
    -------
    int or None
        Position in the query, relative to the start of the alignment. A position
        equal to the number of aligned reference residues maps to the end of the
        aligned query. ``None`` if `position` is outside the alignment.

    """
    if position < 0:
        return None
    query_position = 0
    reference_position = 0

    for s, r in zip(aligned_sequence, aligned_reference):
        # this has to come first, since we might have an alignment
        # where we want position 0 of the reference, but there are
        # leading gaps for which we need to increment the query first
        if r == "-":
            query_position += 1
        elif reference_position == position:
            return query_position
        elif s == "-":
            reference_position += 1
        else:
            query_position += 1
            reference_position += 1
    if reference_position == position:
        return query_position
    return None


def project_subject_position(
    position: int,
    alignment: CandidateAlignment,
    query_length: int,
) -> int:
    """
    Projects a germline (subject) position onto the oriented query.

    Positions inside the aligned subject span are projected through the gapped
    alignment strings if available, and linearly otherwise. Positions outside the
    aligned span are always projected linearly, so the result may fall outside the
    query; callers are responsible for clipping.

    Parameters
    ----------
    position : int
        0-based position on the forward germline sequence.

    alignment : CandidateAlignment
        Alignment between the query and the germline gene.

    query_length : int
        Length of the complete query.

    Returns
    -------
    int
        0-based position on the oriented query.

    """
    query_start, _ = alignment.oriented_span(query_length)
    offset = position - alignment.subject_start
    if (
        alignment.has_alignment_strings
        and alignment.subject_start <= position <= alignment.subject_end
    ):
        projected = get_position_from_aligned_reference(
            offset, alignment.aligned_query, alignment.aligned_subject
        )
        if projected is not None:
            return query_start + projected
    return query_start + offset
