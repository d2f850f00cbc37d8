# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Optional, Tuple

import abutils
from abutils import Sequence

from ..core.exceptions import FatalSearchEngineError
from ..core.options import GeneDatabase

__all__ = [
    "CandidateAlignment",
    "SearchResult",
    "SequenceCatalog",
    "SearchEngineBase",
]


@dataclass(frozen=True)
class CandidateAlignment:
    """
    A single scored alignment between a query and a germline gene.

    Query coordinates are 0-based, half-open and always refer to the plus strand
    of the complete query sequence, so ``query_start < query_end`` regardless of
    `strand`. Subject coordinates are 0-based, half-open on the forward germline.
    For minus-strand alignments the subject start therefore pairs with the query
    end.

    If provided, `aligned_query` and `aligned_subject` are the gapped alignment
    strings, with the query shown in the subject's orientation (reverse-complemented
    for minus-strand alignments).
    """

    query_id: str
    subject_id: str
    strand: str
    query_start: int
    query_end: int
    subject_start: int
    subject_end: int
    score: float
    length: int
    evalue: Optional[float] = None
    aligned_query: Optional[str] = None
    aligned_subject: Optional[str] = None
    gene_class: Optional[str] = None

    @property
    def minus_strand(self) -> bool:
        return self.strand == "-"

    @property
    def has_alignment_strings(self) -> bool:
        return self.aligned_query is not None and self.aligned_subject is not None

    def oriented_span(self, query_length: int) -> Tuple[int, int]:
        """
        Query span on the oriented query (the reverse complement of the query
        for minus-strand alignments).
        """
        if self.minus_strand:
            return query_length - self.query_end, query_length - self.query_start
        return self.query_start, self.query_end

    def shifted(self, offset: int) -> "CandidateAlignment":
        """
        Returns a copy with query coordinates shifted by `offset`. Used to map
        alignments of a query window back onto the complete query.
        """
        if offset == 0:
            return self
        return replace(
            self,
            query_start=self.query_start + offset,
            query_end=self.query_end + offset,
        )

    def tagged(self, gene_class: str) -> "CandidateAlignment":
        return replace(self, gene_class=gene_class)


@dataclass(frozen=True)
class SearchResult:
    """
    Search engine output for a single query and database.
    """

    query_id: str
    alignments: Tuple[CandidateAlignment, ...] = ()
    messages: Tuple[str, ...] = ()
    ancillary: dict = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "alignments", tuple(self.alignments))
        object.__setattr__(self, "messages", tuple(self.messages))

    def with_alignments(
        self, alignments: Iterable[CandidateAlignment]
    ) -> "SearchResult":
        return replace(self, alignments=tuple(alignments))

    def with_messages(self, *messages: str) -> "SearchResult":
        return replace(self, messages=self.messages + tuple(messages))


class SequenceCatalog:
    """
    Sequence and metadata provider for queries and germline subjects.

    Lookups for unknown identifiers return ``None``.
    """

    def __init__(self, sequences: Optional[Iterable[Sequence]] = None):
        self._sequences = {}
        if sequences is not None:
            self.add(sequences)

    def __contains__(self, seq_id: str) -> bool:
        return seq_id in self._sequences

    def __len__(self) -> int:
        return len(self._sequences)

    def add(self, sequences: Iterable[Sequence]) -> None:
        for seq in sequences:
            if isinstance(seq, str):
                raise TypeError("SequenceCatalog entries must have an ID")
            self._sequences[seq.id] = seq

    def sequence(self, seq_id: str) -> Optional[str]:
        seq = self._sequences.get(seq_id)
        return seq.sequence if seq is not None else None

    def length(self, seq_id: str) -> Optional[int]:
        seq = self._sequences.get(seq_id)
        return len(seq.sequence) if seq is not None else None

    def label(self, seq_id: str) -> Optional[str]:
        """
        Label of the sequence, with any species suffix (``"IGHV1-2*02__human"``)
        removed.
        """
        if seq_id not in self._sequences:
            return None
        return seq_id.split("__")[0]


class SearchEngineBase:
    """
    Base class for search engines.

    Subclasses must implement ``_search_windows``, which receives the query windows
    of a single request and returns candidate alignments in window coordinates. The
    base class takes care of mapping window coordinates back onto the complete query
    and of packaging results into ``SearchResult`` objects.

    Attributes
    ----------
    batched : bool
        Whether the engine prefers to receive all windows of a stage in a single
        call. Non-batched engines are driven one query at a time.

    rid : str or None
        Correlation identifier of a remote search job. ``None`` for local engines.

    catalog : SequenceCatalog
        Germline subject metadata, populated by ``prepare()``.

    """

    batched = False

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        debug: bool = False,
    ):
        self.logger = logger if logger is not None else abutils.log.null_logger()
        self.debug = debug
        self.rid = None
        self.catalog = SequenceCatalog()
        self._germlines = {}

    def prepare(self, databases: Dict[str, GeneDatabase]) -> None:
        """
        Loads germline sequences for every configured database. Called once per run,
        before any search is issued.

        Raises
        ------
        FatalSearchEngineError
            If a database cannot be found or read.

        """
        for slot, database in databases.items():
            if database is None or database.name in self._germlines:
                continue
            if not database.exists():
                raise FatalSearchEngineError(
                    f"Germline database '{database.name}' ({slot}) not found: {database.path}"
                )
            germlines = self.load_germlines(database)
            self._germlines[database.name] = germlines
            self.catalog.add(germlines)
            self.logger.info(
                f"loaded {len(germlines):,} {database.gene_class} germlines from {database.name}"
            )

    def load_germlines(self, database: GeneDatabase) -> list:
        if database.sequences is not None:
            return [
                s if isinstance(s, Sequence) else Sequence(s) for s in database.sequences
            ]
        if database.remote or database.fasta is None:
            return []
        try:
            return abutils.io.read_fasta(database.fasta)
        except (OSError, ValueError) as e:
            raise FatalSearchEngineError(
                f"Unable to read germline database '{database.name}': {e}"
            ) from e

    def germlines(self, database: GeneDatabase) -> list:
        return self._germlines.get(database.name, [])

    def search(self, request) -> Dict[str, SearchResult]:
        """
        Runs a search request.

        Parameters
        ----------
        request : SearchRequest
            Query windows, database and stage options.

        Returns
        -------
        dict
            ``SearchResult`` for every query in the request, keyed by query ID and in
            request order. Queries without hits get an empty ``SearchResult``.

        """
        raw = self._search_windows(request)
        results = {}
        for window in request.windows:
            found = raw.get(window.query_id)
            if found is None:
                results[window.query_id] = SearchResult(window.query_id)
                continue
            alignments, messages = found
            results[window.query_id] = SearchResult(
                window.query_id,
                alignments=[a.shifted(window.start) for a in alignments],
                messages=messages,
                ancillary={"window": (window.start, window.end)},
            )
        return results

    def _search_windows(self, request) -> Dict[str, tuple]:
        """
        All classes subclassing ``SearchEngineBase`` must implement this method.

        The return value is a ``dict`` mapping query IDs to a tuple of
        (``list`` of ``CandidateAlignment``, ``list`` of message strings), with query
        coordinates relative to the start of each query window.
        """
        raise NotImplementedError("Subclasses must implement this method")

    def cleanup(self) -> None:
        pass
