# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import math
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple

from ..annotation.record import AnnotationRecord
from ..core.options import GeneDatabase, SearchParameters

__all__ = [
    "DJ_WINDOW_SLACK",
    "QueryWindow",
    "StageOptions",
    "SearchRequest",
    "stage_options",
    "build_v_search",
    "build_domain_search",
    "build_dj_search",
    "build_c_search",
    "build_no_overlap_d_search",
]


# bases upstream of the previous gene's end included in D/J/C search windows,
# so that alignments trimmed short by the previous stage can still be found
DJ_WINDOW_SLACK = 10


@dataclass(frozen=True)
class QueryWindow:
    """
    A sub-sequence of a query, in plus-strand coordinates of the complete query.
    """

    query_id: str
    sequence: str
    start: int = 0
    end: Optional[int] = None

    def __post_init__(self):
        if self.end is None:
            object.__setattr__(self, "end", len(self.sequence))

    @property
    def subsequence(self) -> str:
        return self.sequence[self.start : self.end]

    @property
    def length(self) -> int:
        return max(0, self.end - self.start)

    @property
    def query_length(self) -> int:
        return len(self.sequence)


@dataclass(frozen=True)
class StageOptions:
    """
    Search parameters for a single gene class, derived from ``SearchParameters``.
    """

    gene_class: str
    molecule: str = "nucl"
    word_size: int = 11
    match_reward: int = 1
    mismatch_penalty: int = -1
    gap_open: int = -5
    gap_extend: int = -2
    evalue: float = 10.0
    hitlist_size: int = 25
    min_length: int = 0
    both_strands: bool = True


@dataclass(frozen=True)
class SearchRequest:
    """
    Query windows to be searched against a single germline database.
    """

    gene_class: str
    database: GeneDatabase
    windows: Tuple[QueryWindow, ...]
    options: StageOptions

    def __post_init__(self):
        object.__setattr__(self, "windows", tuple(self.windows))

    def __len__(self) -> int:
        return len(self.windows)

    @property
    def query_ids(self) -> List[str]:
        return [w.query_id for w in self.windows]

    def split(self, n: int) -> List["SearchRequest"]:
        """
        Splits the request into (at most) `n` requests of roughly equal size,
        preserving window order.
        """
        if n <= 1 or len(self.windows) <= 1:
            return [self]
        size = math.ceil(len(self.windows) / n)
        return [
            replace(self, windows=self.windows[i : i + size])
            for i in range(0, len(self.windows), size)
        ]

    def chunked(self, chunksize: int) -> List["SearchRequest"]:
        chunksize = max(1, chunksize)
        return [
            replace(self, windows=self.windows[i : i + chunksize])
            for i in range(0, len(self.windows), chunksize)
        ]


def stage_options(gene_class: str, params: SearchParameters) -> StageOptions:
    """
    Derives class-specific search options from the run parameters.

    Parameters
    ----------
    gene_class : str
        One of ``"V"``, ``"D"``, ``"J"`` or ``"C"``.

    params : SearchParameters
        Run parameters.

    Returns
    -------
    StageOptions

    """
    gene_class = gene_class.upper()
    if gene_class == "V":
        if params.is_protein:
            return StageOptions(
                gene_class="V",
                molecule="prot",
                word_size=3,
                match_reward=5,
                mismatch_penalty=-4,
                gap_open=-11,
                gap_extend=-1,
                evalue=1.0,
                hitlist_size=params.hitlist_size,
                min_length=params.min_v_length,
                both_strands=False,
            )
        return StageOptions(
            gene_class="V",
            word_size=11,
            mismatch_penalty=params.v_penalty,
            gap_open=-5,
            gap_extend=-2,
            evalue=20.0,
            hitlist_size=params.hitlist_size,
            min_length=params.min_v_length,
        )
    if gene_class == "D":
        # D genes are short, so the search is effectively ungapped
        return StageOptions(
            gene_class="D",
            word_size=params.min_d_match,
            mismatch_penalty=params.d_penalty,
            gap_open=-20,
            gap_extend=-10,
            evalue=1000.0,
            hitlist_size=params.hitlist_size,
            min_length=params.min_d_match,
        )
    if gene_class == "J":
        return StageOptions(
            gene_class="J",
            word_size=7,
            mismatch_penalty=params.j_penalty,
            gap_open=-5,
            gap_extend=-2,
            evalue=1000.0,
            hitlist_size=params.hitlist_size,
            min_length=params.min_j_length,
        )
    if gene_class == "C":
        return StageOptions(
            gene_class="C",
            word_size=11,
            mismatch_penalty=params.penalty("C"),
            gap_open=-5,
            gap_extend=-2,
            evalue=10.0,
            hitlist_size=params.hitlist_size,
        )
    raise ValueError(f"Unknown gene class: {gene_class}")


def build_v_search(
    queries: Iterable,
    database: GeneDatabase,
    params: SearchParameters,
) -> SearchRequest:
    """
    Builds the V gene search. Every non-empty query is searched in its entirety.
    """
    options = stage_options("V", params)
    windows = [QueryWindow(q.id, q.sequence) for q in queries if len(q.sequence) > 0]
    return SearchRequest("V", database, windows, options)


def build_domain_search(
    queries: Iterable,
    database: GeneDatabase,
    params: SearchParameters,
) -> SearchRequest:
    """
    Builds the domain search: a V gene search against the database whose genes carry
    domain layout data.
    """
    return build_v_search(queries, database, params)


def build_dj_search(
    queries: Iterable,
    records: Iterable[AnnotationRecord],
    database: GeneDatabase,
    gene_class: str,
    params: SearchParameters,
) -> SearchRequest:
    """
    Builds a D or J gene search. Each query is restricted to the region downstream of
    its V gene (with ``DJ_WINDOW_SLACK`` bases of overlap).

    Queries without a V assignment are skipped, or searched in their entirety if
    ``params.unrestricted_fallback`` is set. Windows too short to contain a seed
    are excluded.
    """
    options = stage_options(gene_class, params)
    windows = []
    for query, record in zip(queries, records):
        if record.v_query_end is None:
            if params.unrestricted_fallback and len(query.sequence) > 0:
                windows.append(QueryWindow(query.id, query.sequence))
            continue
        start = max(0, record.v_query_end - DJ_WINDOW_SLACK)
        window = _oriented_window(query, record, start, len(query.sequence))
        if window is not None and window.length >= options.word_size:
            windows.append(window)
    return SearchRequest(gene_class.upper(), database, windows, options)


def build_c_search(
    queries: Iterable,
    records: Iterable[AnnotationRecord],
    database: GeneDatabase,
    params: SearchParameters,
) -> SearchRequest:
    """
    Builds the constant region search. Each query is restricted to the region
    downstream of its J gene (or V gene, if no J gene was assigned).
    """
    options = stage_options("C", params)
    windows = []
    for query, record in zip(queries, records):
        upstream_end = (
            record.j_query_end if record.j_query_end is not None else record.v_query_end
        )
        if upstream_end is None:
            if params.unrestricted_fallback and len(query.sequence) > 0:
                windows.append(QueryWindow(query.id, query.sequence))
            continue
        start = max(0, upstream_end - DJ_WINDOW_SLACK)
        window = _oriented_window(query, record, start, len(query.sequence))
        if window is not None and window.length >= options.word_size:
            windows.append(window)
    return SearchRequest("C", database, windows, options)


def build_no_overlap_d_search(
    queries: Iterable,
    records: Iterable[AnnotationRecord],
    database: GeneDatabase,
    params: SearchParameters,
) -> SearchRequest:
    """
    Builds a second D gene search restricted to the junction between the V and J
    genes, so that a D gene can be found that does not overlap either of them.

    Only queries with both V and J assignments and a junction at least
    ``params.min_d_match`` bases long are included. Callers pass only the
    queries that the D/J resolver flagged for a second search.
    """
    options = stage_options("D", params)
    windows = []
    for query, record in zip(queries, records):
        if record.v_query_end is None or record.j_query_start is None:
            continue
        window = _oriented_window(
            query, record, record.v_query_end, record.j_query_start
        )
        if window is not None and window.length >= params.min_d_match:
            windows.append(window)
    return SearchRequest("D", database, windows, options)


def _oriented_window(
    query, record: AnnotationRecord, start: int, end: int
) -> Optional[QueryWindow]:
    """
    Converts a window on the oriented query into a plus-strand ``QueryWindow``.
    Returns ``None`` for empty windows.
    """
    length = len(query.sequence)
    start = max(0, min(start, length))
    end = max(0, min(end, length))
    if end <= start:
        return None
    if record.minus_strand:
        start, end = length - end, length - start
    return QueryWindow(query.id, query.sequence, start, end)
