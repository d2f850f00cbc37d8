# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import itertools
import logging
import os
import subprocess
import tempfile
import threading
from typing import Dict, Optional

import abutils
import polars as pl
from abutils import Sequence

from ..core.exceptions import SearchEngineError
from .engine import CandidateAlignment, SearchEngineBase

__all__ = ["MMSEQS_FORMAT_OUTPUT", "MMseqs", "parse_mmseqs_results"]


MMSEQS_FORMAT_OUTPUT = "query,target,evalue,bits,qstart,qend,tstart,tend,alnlen,qaln,taln"


class MMseqs(SearchEngineBase):
    """
    Search engine backed by MMseqs2. All query windows of a stage are searched in a
    single MMseqs2 call.

    Parameters
    ----------
    output_directory : str, optional
        Directory for temporary query and result files. If not provided, a temporary
        directory is created.

    log_directory : str, optional
        Directory for MMseqs2 log files. Defaults to `output_directory`.

    threads : int, optional
        Number of threads used by each MMseqs2 call.

    sensitivity : float, default 7.5
        MMseqs2 sensitivity (``-s``).

    logger : logging.Logger, optional
        Logger. If not provided, logging is disabled.

    debug : bool, default False
        If ``True``, temporary files are retained and MMseqs2 output is logged.

    """

    batched = True

    def __init__(
        self,
        output_directory: Optional[str] = None,
        log_directory: Optional[str] = None,
        threads: Optional[int] = None,
        sensitivity: float = 7.5,
        logger: Optional[logging.Logger] = None,
        debug: bool = False,
    ):
        super().__init__(logger=logger, debug=debug)
        if output_directory is None:
            output_directory = tempfile.mkdtemp(prefix="igstar_")
        self.output_directory = os.path.abspath(output_directory)
        self.log_directory = os.path.abspath(log_directory or output_directory)
        self.threads = threads
        self.sensitivity = sensitivity
        self.to_delete = []  # files that should be deleted during cleanup
        self._call_ids = itertools.count(1)
        self._call_lock = threading.Lock()

        abutils.io.make_dir(self.output_directory)
        abutils.io.make_dir(self.log_directory)

    def _search_windows(self, request) -> Dict[str, tuple]:
        windows = [w for w in request.windows if w.length > 0]
        if not windows:
            return {}
        gene_class = request.gene_class.lower()
        basename = f"{gene_class}.{self._next_call_id()}"
        query_path = os.path.join(self.output_directory, f"{basename}.query.fasta")
        result_path = os.path.join(self.output_directory, f"{basename}.result.tsv")
        if not self.debug:
            self.to_delete.extend([query_path, result_path])

        # windows for the same query are not expected, but IDs are indexed
        # so that results can always be mapped back to the right window
        window_ids = {f"q{i}": w for i, w in enumerate(windows)}
        abutils.io.to_fasta(
            [Sequence(w.subsequence, id=i) for i, w in window_ids.items()],
            query_path,
        )

        options = request.options
        cli_args = [f"-k {options.word_size}", "--alignment-mode 3"]
        if options.min_length:
            cli_args.append(f"--min-aln-len {options.min_length}")
        if self.threads is not None:
            cli_args.append(f"--threads {self.threads}")

        self.logger.info(f"  {request.gene_class}: {len(windows):,} queries")
        try:
            abutils.tl.mmseqs_search(
                query=query_path,
                target=request.database.path,
                output_path=result_path,
                search_type=1 if options.molecule == "prot" else 3,
                max_seqs=options.hitlist_size,
                sensitivity=self.sensitivity,
                max_evalue=options.evalue,
                format_mode=4,
                additional_cli_args=" ".join(cli_args),
                format_output=MMSEQS_FORMAT_OUTPUT,
                log_to=os.path.join(self.log_directory, f"{basename}.log"),
                debug=self.debug,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SearchEngineError(
                f"MMseqs2 search against {request.database.name} failed: {e}",
                query_ids=[w.query_id for w in windows],
            ) from e

        parsed = parse_mmseqs_results(result_path, window_ids)
        return {
            w.query_id: (parsed.get(i, []), []) for i, w in window_ids.items()
        }

    def _next_call_id(self) -> int:
        # chunks of a stage run concurrently and each needs its own temp files
        with self._call_lock:
            return next(self._call_ids)

    def cleanup(self) -> None:
        abutils.io.delete_files(self.to_delete)
        self.to_delete = []


def parse_mmseqs_results(result_path: str, window_ids: dict) -> Dict[str, list]:
    """
    Parses an MMseqs2 result file (``format_mode=4``, with ``MMSEQS_FORMAT_OUTPUT``
    columns) into ``CandidateAlignment`` objects in window coordinates.

    MMseqs2 coordinates are 1-based and inclusive. Reverse strand hits are reported
    with ``qstart > qend``; their aligned query strings are in the target orientation.

    Parameters
    ----------
    result_path : str
        Path to the MMseqs2 result file.

    window_ids : dict
        Query windows, keyed by the IDs used in the MMseqs2 query file.

    Returns
    -------
    dict
        Lists of ``CandidateAlignment``, keyed by MMseqs2 query ID.

    """
    if not os.path.exists(result_path) or os.path.getsize(result_path) == 0:
        return {}
    df = pl.read_csv(
        result_path,
        separator="\t",
        schema_overrides={"query": pl.Utf8, "target": pl.Utf8},
    )
    if df.height == 0:
        return {}
    df = df.sort(by=["query", "bits"], descending=[False, True], nulls_last=True)
    results = {}
    for r in df.iter_rows(named=True):
        window = window_ids.get(r["query"])
        if window is None:
            continue
        minus = r["qstart"] > r["qend"]
        if minus:
            query_start, query_end = r["qend"] - 1, r["qstart"]
        else:
            query_start, query_end = r["qstart"] - 1, r["qend"]
        aln = CandidateAlignment(
            query_id=window.query_id,
            subject_id=r["target"],
            strand="-" if minus else "+",
            query_start=query_start,
            query_end=query_end,
            subject_start=min(r["tstart"], r["tend"]) - 1,
            subject_end=max(r["tstart"], r["tend"]),
            score=float(r["bits"]),
            length=int(r["alnlen"]),
            evalue=r["evalue"],
            aligned_query=r.get("qaln"),
            aligned_subject=r.get("taln"),
        )
        results.setdefault(r["query"], []).append(aln)
    return results
