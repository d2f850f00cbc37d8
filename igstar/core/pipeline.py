# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import logging
import os
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Union

import abutils
from abutils import Sequence
from tqdm.auto import tqdm

from ..annotation.dj import DJResolution, annotate_dj, resolve_d_only, resolve_dj
from ..annotation.domains import annotate_domains
from ..annotation.genes import annotate_c, annotate_v
from ..annotation.layout import DomainLayoutTable
from ..annotation.record import FRAME_FIELDS, AnnotationRecord
from ..engines.engine import SearchEngineBase, SearchResult
from ..engines.local import LocalAlignment
from ..search.ranking import (
    append_results,
    filter_by_sequence_type,
    rank_alignments,
    sort_results_by_evalue,
)
from ..search.refine import extend_3prime, extend_5prime, focus_on_v, screen_by_length
from ..search.stages import (
    SearchRequest,
    build_c_search,
    build_dj_search,
    build_domain_search,
    build_no_overlap_d_search,
    build_v_search,
)
from .exceptions import ConfigurationError, FatalSearchEngineError
from .options import DATABASE_SLOTS, GeneDatabase, SearchParameters
from .results import IgResult, IgResultSet

__all__ = ["IgSearch", "run_igsearch"]


class IgSearch:
    """
    Searches immune receptor queries against V, D, J and C germline databases and
    annotates the results.

    Stages are run in order (V, then D/J, then C, then domain annotation) and each
    stage is a barrier: the search windows of a stage depend on the annotations
    produced by the previous stage. Within a stage, search requests are run in
    parallel across queries.

    Parameters
    ----------
    queries : Union[str, Sequence, Iterable[Sequence]]
        Query sequences. Can be one of the following:

          - ``str``: path to a FASTA/Q file, or a single sequence, as a string
          - ``Sequence``: a single ``abutils.Sequence`` object
          - ``Iterable[Sequence]``: an iterable of ``abutils.Sequence`` objects (or of
            anything that can be converted to a ``Sequence``)

    databases : dict
        ``GeneDatabase`` objects, keyed by slot: ``"v"`` (user V), ``"d"``, ``"j"``,
        ``"domain"`` (default V, whose genes carry domain layout data) and ``"c"``.
        Slots may be missing or ``None``.

    params : SearchParameters, optional
        Search parameters. Defaults are used if not provided.

    engine : SearchEngineBase, optional
        Search engine. Defaults to ``LocalAlignment``.

    layout : DomainLayoutTable, optional
        Germline domain layouts and frame offsets. Without a layout table, domain
        and frame annotations are not produced.

    n_threads : int, default 1
        Number of search requests run in parallel within a stage.

    chunksize : int, optional
        Number of queries per search request. Defaults to 1 for engines that are
        not batched, and to an even split across `n_threads` for batched engines.

    logger : logging.Logger, optional
        Logger. If not provided, logging is disabled.

    verbose : bool, default False
        Show a progress bar for each search stage.

    """

    def __init__(
        self,
        queries: Union[str, Sequence, Iterable[Sequence]],
        databases: Dict[str, Optional[GeneDatabase]],
        params: Optional[SearchParameters] = None,
        engine: Optional[SearchEngineBase] = None,
        layout: Optional[DomainLayoutTable] = None,
        n_threads: int = 1,
        chunksize: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
        verbose: bool = False,
    ):
        self.queries = _process_queries(queries)
        self.databases = {k: v for k, v in (databases or {}).items() if v is not None}
        self.params = params if params is not None else SearchParameters()
        self.logger = logger if logger is not None else abutils.log.null_logger()
        self.engine = engine if engine is not None else LocalAlignment(logger=logger)
        self.layout = layout
        self.n_threads = n_threads
        self.chunksize = chunksize
        self.verbose = verbose

        self.records = []
        self._v = {}
        self._d = {}
        self._j = {}
        self._c = {}
        self._domain = {}
        self._resolutions = {}

    @property
    def v_database(self) -> Optional[GeneDatabase]:
        return self.databases.get("v", self.databases.get("domain"))

    def run(self) -> IgResultSet:
        """
        Runs the search and annotation pipeline.

        Returns
        -------
        IgResultSet
            One ``IgResult`` per input query, in input order.

        Raises
        ------
        ConfigurationError
            If the configuration is invalid. Raised before any search is issued.

        FatalSearchEngineError
            If the search engine fails in a way that affects the entire run.

        """
        self._validate()
        self.records = [
            AnnotationRecord(sequence_id=q.id, query_length=len(q.sequence))
            for q in self.queries
        ]
        for query, record in zip(self.queries, self.records):
            record.log("=" * (len(str(query.id)) + 15))
            record.log(" SEQUENCE ID:", query.id)
            record.log("=" * (len(str(query.id)) + 15) + "\n")
            record.log(f">{query.id}\n{query.sequence}\n")

        self.logger.info(f"found {len(self.queries):,} query sequences\n")
        self.engine.prepare(self.databases)
        try:
            self._v_stage()
            if self._runs_dj:
                self._dj_stage()
            if "c" in self.databases and not self.params.is_protein:
                self._c_stage()
            if "domain" in self.databases and self.layout is not None:
                self._domain_search_stage()
            self._domain_stage()
            if self.params.translate and not self.params.is_protein:
                self._for_each_query(self._translate)
        finally:
            self.engine.cleanup()
        return self._assemble()

    # ------------------------------
    #           STAGES
    # ------------------------------

    @property
    def _runs_dj(self) -> bool:
        return self.params.search_dj and not self.params.is_protein

    def _v_stage(self) -> None:
        self.logger.info("germline search:\n")
        request = build_v_search(self.queries, self.v_database, self.params)
        results = self._run_stage(request)

        def process(query, record):
            alignments = self._ranked(results, query.id, "V")
            alignments = self._refine_v(alignments, query)
            self._v[query.id] = alignments
            if not alignments:
                record.log("NO V HIT")
                return
            record.fold(
                annotate_v(alignments, len(query.sequence), self.layout), "V GENE"
            )

        self._for_each_query(process)

    def _dj_stage(self) -> None:
        d_request = build_dj_search(
            self.queries, self.records, self.databases["d"], "D", self.params
        )
        j_request = build_dj_search(
            self.queries, self.records, self.databases["j"], "J", self.params
        )
        d_results = self._run_stage(d_request)
        j_results = self._run_stage(j_request)

        def process(query, record):
            d_alignments = self._ranked(d_results, query.id, "D")
            j_alignments = self._ranked(j_results, query.id, "J")
            j_alignments = self._refine_j(j_alignments, query)
            self._d[query.id] = d_alignments
            self._j[query.id] = j_alignments
            if not record.has_v and not (d_alignments or j_alignments):
                return
            minus_strand = record.minus_strand
            if not record.has_v and j_alignments:
                minus_strand = j_alignments[0].minus_strand
                record.fold({"minus_strand": minus_strand})
            resolution = resolve_dj(
                d_alignments,
                j_alignments,
                v_end=record.v_query_end,
                chain_type=record.v_chain_type,
                minus_strand=minus_strand,
                query_length=len(query.sequence),
                layout=self.layout,
                detect_overlap=self.params.detect_overlap,
                overlap_tolerance=self.params.dj_overlap_tolerance,
            )
            self._resolutions[query.id] = resolution
            if resolution.j is None:
                record.log("NO J HIT")
            record.fold(
                annotate_dj(resolution, len(query.sequence), self.layout), "D/J GENES"
            )

        self._for_each_query(process)

        # D genes that overlap V or J are rejected, so search the V-J junction
        flagged = [
            (q, r)
            for q, r in zip(self.queries, self.records)
            if q.id in self._resolutions
            and self._resolutions[q.id].needs_no_overlap_d_search
        ]
        if not flagged:
            return
        request = build_no_overlap_d_search(
            [q for q, _ in flagged],
            [r for _, r in flagged],
            self.databases["d"],
            self.params,
        )
        results = self._run_stage(request, label="D (junction)")

        def process_junction(query, record):
            if query.id not in results:
                return
            d_alignments = self._ranked(results, query.id, "D")
            resolution = resolve_d_only(
                d_alignments,
                self._resolutions[query.id],
                v_end=record.v_query_end,
                minus_strand=record.minus_strand,
                query_length=len(query.sequence),
            )
            self._resolutions[query.id] = resolution
            self._d[query.id] = d_alignments + [
                a for a in self._d.get(query.id, []) if a not in d_alignments
            ]
            if resolution.d is not None:
                record.fold(
                    annotate_dj(resolution, len(query.sequence), self.layout),
                    "D GENE (JUNCTION)",
                )

        self._for_each_query(process_junction, [q.id for q, _ in flagged])

    def _c_stage(self) -> None:
        request = build_c_search(
            self.queries, self.records, self.databases["c"], self.params
        )
        results = self._run_stage(request)

        def process(query, record):
            alignments = self._ranked(results, query.id, "C")
            self._c[query.id] = alignments
            if alignments:
                record.fold(
                    annotate_c(
                        alignments,
                        len(query.sequence),
                        minus_strand=record.minus_strand,
                        layout=self.layout,
                    ),
                    "C GENE",
                )

        self._for_each_query(process)

    def _domain_search_stage(self) -> None:
        # only queries whose V gene has no domain layout need the domain database
        needed = [
            q
            for q in self.queries
            if self._v.get(q.id) and self._v[q.id][0].subject_id not in self.layout
        ]
        if not needed:
            return
        if self.databases["domain"] is self.v_database:
            for query in needed:
                self._domain[query.id] = self._v[query.id]
            return
        request = build_domain_search(needed, self.databases["domain"], self.params)
        results = self._run_stage(request, label="domain")
        for query in needed:
            self._domain[query.id] = self._ranked(results, query.id, "V")

    def _domain_stage(self) -> None:
        def process(query, record):
            if not self._v.get(query.id):
                return
            if self.layout is None:
                record.log("NO DOMAIN LAYOUT")
            resolution = self._resolutions.get(query.id, DJResolution())
            j_subject_length = None
            if resolution.j is not None:
                j_subject_length = self.engine.catalog.length(resolution.j.subject_id)
            partial = annotate_domains(
                self._v[query.id][0],
                len(query.sequence),
                self.layout,
                j_alignment=resolution.j,
                j_subject_length=j_subject_length,
                fallback_alignments=self._domain.get(query.id, ()),
                chain_type=record.v_chain_type,
            )
            if self.params.is_protein:
                partial = {k: v for k, v in partial.items() if k not in FRAME_FIELDS}
            if "domain_subject" not in partial:
                record.log("NO DOMAIN ANNOTATION")
            record.fold(partial, "DOMAINS")

        self._for_each_query(process)

    def _translate(self, query, record) -> None:
        if record.v_frame_start is None:
            return
        sequence = query.sequence
        if record.minus_strand:
            sequence = abutils.tl.reverse_complement(sequence)
        record.fold(
            {"sequence_aa": abutils.tl.translate(sequence[record.v_frame_start :])},
            "TRANSLATION",
        )

    # ------------------------------
    #          HELPERS
    # ------------------------------

    def _run_stage(
        self, request: SearchRequest, label: Optional[str] = None
    ) -> Dict[str, SearchResult]:
        """
        Runs a search request, split into chunks that are searched in parallel.

        Chunk results are merged in input order and each query's alignments are sorted
        by e-value. A failed chunk (a ``SearchEngineError`` or any other engine
        exception) is attached as a message to every query in the chunk and the run
        continues; a ``FatalSearchEngineError`` is re-raised.
        """
        label = label or request.gene_class
        if len(request) == 0:
            self.logger.info(f"  {label}: no queries to search")
            return {}
        if self.chunksize is not None:
            chunks = request.chunked(self.chunksize)
        elif self.engine.batched:
            chunks = request.split(self.n_threads)
        else:
            chunks = request.chunked(1)

        results = {}
        if self.verbose:
            progress_bar = tqdm(total=len(chunks), desc=f"  - {label}")
        with ThreadPoolExecutor(max_workers=self.n_threads) as executor:
            futures = [executor.submit(self.engine.search, c) for c in chunks]
            for chunk, future in zip(chunks, futures):
                try:
                    results.update(future.result())
                except FatalSearchEngineError:
                    for f in futures:
                        f.cancel()
                    raise
                except Exception as e:
                    self.logger.info(f"  {label} search failed: {e}")
                    for query_id in chunk.query_ids:
                        results[query_id] = SearchResult(
                            query_id, messages=[f"{label} search failed: {e}"]
                        )
                if self.verbose:
                    progress_bar.update(1)
        if self.verbose:
            progress_bar.close()

        records = {r.sequence_id: r for r in self.records}
        for query_id, result in results.items():
            for message in result.messages:
                records[query_id].add_message(message)
        return sort_results_by_evalue(results)

    def _ranked(self, results: Dict[str, SearchResult], query_id: str, gene_class: str):
        result = results.get(query_id)
        if result is None:
            return []
        alignments = list(result.alignments)
        if gene_class == "V":
            alignments = filter_by_sequence_type(alignments, self.params.sequence_type)
        return rank_alignments(
            alignments,
            provider=self.engine.catalog,
            gene_class=gene_class,
            max_keep=self.params.hitlist_size,
        )

    def _refine_v(self, alignments, query) -> list:
        if self.params.extend_5prime and not self.params.is_protein:
            alignments = extend_5prime(
                alignments,
                provider=self.engine.catalog,
                query_length=len(query.sequence),
                max_extension=self.params.max_extension,
                query_sequence=query.sequence,
            )
        if self.params.focus_v:
            alignments = focus_on_v(alignments, self.layout)
        return screen_by_length(alignments, self.params.min_v_length)

    def _refine_j(self, alignments, query) -> list:
        if self.params.extend_3prime:
            alignments = extend_3prime(
                alignments,
                provider=self.engine.catalog,
                query_length=len(query.sequence),
                max_extension=self.params.max_extension,
                query_sequence=query.sequence,
            )
        return screen_by_length(alignments, self.params.min_j_length)

    def _for_each_query(
        self, func: Callable, query_ids: Optional[Iterable[str]] = None
    ) -> None:
        """
        Applies `func` to each (query, record) pair. Unexpected exceptions are
        recorded on the query's record and never abort the run.
        """
        if query_ids is not None:
            query_ids = set(query_ids)
        for query, record in zip(self.queries, self.records):
            if query_ids is not None and query.id not in query_ids:
                continue
            try:
                func(query, record)
            except Exception:
                record.exception("ANNOTATION EXCEPTION", traceback.format_exc())

    def _assemble(self) -> IgResultSet:
        final = append_results(self._v, self.params.num_alignments_v, "V")
        if self._runs_dj:
            final = append_results(self._d, self.params.num_alignments_d, "D", final)
            final = append_results(self._j, self.params.num_alignments_j, "J", final)
        final = append_results(self._c, self.params.num_alignments_c, "C", final)
        results = [
            IgResult(
                query_id=q.id,
                annotation=r,
                alignments=final.get(q.id, []),
                messages=list(r.messages),
            )
            for q, r in zip(self.queries, self.records)
        ]
        return IgResultSet(results, rid=self.engine.rid)

    def _validate(self) -> None:
        """
        Checks the run configuration.

        Raises
        ------
        ConfigurationError
            If the configuration is invalid.

        """
        self.params.validate()
        if self.v_database is None:
            raise ConfigurationError("A V germline database is required")
        for slot, database in self.databases.items():
            if slot not in DATABASE_SLOTS:
                raise ConfigurationError(
                    f"Unknown database slot '{slot}'. Options are: {', '.join(DATABASE_SLOTS)}"
                )
            if database.gene_class != DATABASE_SLOTS[slot]:
                raise ConfigurationError(
                    f"The '{slot}' database must contain {DATABASE_SLOTS[slot]} genes, not {database.gene_class} genes"
                )
        if self._runs_dj and ("d" not in self.databases or "j" not in self.databases):
            raise ConfigurationError(
                "D/J searches require both D and J germline databases"
            )
        if self.n_threads < 1:
            raise ConfigurationError(f"n_threads must be at least 1 (got {self.n_threads})")
        if self.chunksize is not None and self.chunksize < 1:
            raise ConfigurationError(f"chunksize must be at least 1 (got {self.chunksize})")
        query_ids = [q.id for q in self.queries]
        if len(set(query_ids)) != len(query_ids):
            raise ConfigurationError("Query sequence IDs must be unique")


def run_igsearch(
    queries: Union[str, Sequence, Iterable[Sequence]],
    databases: Dict[str, Optional[GeneDatabase]],
    params: Optional[Union[SearchParameters, dict]] = None,
    engine: Optional[SearchEngineBase] = None,
    layout: Optional[DomainLayoutTable] = None,
    n_threads: int = 1,
    chunksize: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
    verbose: bool = False,
) -> IgResultSet:
    """
    Searches and annotates immune receptor sequences.

    See ``IgSearch`` for a description of the parameters. `params` may also be a
    ``dict``, which is converted with ``SearchParameters.from_dict``.

    Returns
    -------
    IgResultSet

    """
    if isinstance(params, dict):
        params = SearchParameters.from_dict(params)
    return IgSearch(
        queries=queries,
        databases=databases,
        params=params,
        engine=engine,
        layout=layout,
        n_threads=n_threads,
        chunksize=chunksize,
        logger=logger,
        verbose=verbose,
    ).run()


def _process_queries(
    queries: Union[str, Sequence, Iterable[Sequence]],
) -> List[Sequence]:
    """
    Process the various query inputs accepted by igstar and return a list of
    ``Sequence`` objects.
    """
    if isinstance(queries, str):
        if os.path.isfile(queries):
            return list(abutils.io.parse_fastx(queries))
        return [Sequence(queries)]
    if isinstance(queries, Sequence):
        return [queries]
    if queries is None:
        raise ValueError(
            "Invalid input sequences. Must be a path to a file, a single sequence, or an iterable of sequences."
        )
    return [q if isinstance(q, Sequence) else Sequence(q) for q in queries]
