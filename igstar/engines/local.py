# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import logging
from typing import Dict, List, Optional

import abutils

from ..core.exceptions import SearchEngineError
from .engine import CandidateAlignment, SearchEngineBase

__all__ = ["LocalAlignment"]


class LocalAlignment(SearchEngineBase):
    """
    Search engine that performs Smith-Waterman local alignment of each query window
    against every germline gene in the database, on both strands.

    Slower than an indexed search, but it requires no external binaries or pre-built
    databases, which makes it well suited to small jobs and testing.
    """

    batched = False

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        debug: bool = False,
    ):
        super().__init__(logger=logger, debug=debug)

    def _search_windows(self, request) -> Dict[str, tuple]:
        germs = self.germlines(request.database)
        results = {}
        for window in request.windows:
            try:
                alignments = self._align_window(window, germs, request.options)
            except (ValueError, RuntimeError) as e:
                raise SearchEngineError(
                    f"local alignment of {window.query_id} against {request.database.name} failed: {e}",
                    query_ids=[window.query_id],
                ) from e
            results[window.query_id] = (alignments, [])
        return results

    def _align_window(self, window, germs, options) -> List[CandidateAlignment]:
        sequence = window.subsequence
        if not sequence or not germs:
            return []
        aln_params = {
            "match": options.match_reward,
            "mismatch": options.mismatch_penalty,
            "gap_open": options.gap_open,
            "gap_extend": options.gap_extend,
        }
        is_aa = options.molecule == "prot"
        strands = [("+", sequence)]
        if options.both_strands and not is_aa:
            strands.append(("-", abutils.tl.reverse_complement(sequence)))
        alignments = []
        for strand, query in strands:
            alns = abutils.tl.local_alignment(
                query, targets=germs, aa=is_aa, **aln_params
            )
            # a single target gives a single alignment rather than a list
            if not isinstance(alns, list):
                alns = [alns]
            for aln in alns:
                candidate = self._to_candidate(aln, window, strand, len(sequence))
                if candidate is None:
                    continue
                if candidate.length < max(options.word_size, options.min_length):
                    continue
                alignments.append(candidate)
        alignments.sort(key=lambda a: (-a.score, a.subject_id, a.query_start))
        return alignments[: options.hitlist_size]

    @staticmethod
    def _to_candidate(
        aln, window, strand: str, window_length: int
    ) -> Optional[CandidateAlignment]:
        if aln.score <= 0 or aln.query_end < aln.query_begin:
            return None
        # alignment ends are inclusive
        if strand == "-":
            query_start = window_length - (aln.query_end + 1)
            query_end = window_length - aln.query_begin
        else:
            query_start = aln.query_begin
            query_end = aln.query_end + 1
        return CandidateAlignment(
            query_id=window.query_id,
            subject_id=aln.target.id,
            strand=strand,
            query_start=query_start,
            query_end=query_end,
            subject_start=aln.target_begin,
            subject_end=aln.target_end + 1,
            score=float(aln.score),
            length=len(aln.aligned_query),
            aligned_query=aln.aligned_query,
            aligned_subject=aln.aligned_target,
        )
