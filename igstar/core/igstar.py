# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import os
from typing import Iterable, Optional, Union

import abutils
from abutils import Sequence
from natsort import natsorted

from ..annotation.layout import get_layout_files, load_domain_layout
from ..engines.local import LocalAlignment
from ..engines.mmseqs import MMseqs
from .exceptions import ConfigurationError
from .options import GeneDatabase, SearchParameters
from .pipeline import IgSearch

__all__ = ["ENGINES", "run", "build_databases"]


ENGINES = {
    "local": LocalAlignment,
    "mmseqs": MMseqs,
}


def build_databases(
    v: Optional[str] = None,
    d: Optional[str] = None,
    j: Optional[str] = None,
    c: Optional[str] = None,
    domain: Optional[str] = None,
    search_paths: Optional[dict] = None,
) -> dict:
    """
    Builds ``GeneDatabase`` objects from germline FASTA files.

    Parameters
    ----------
    v, d, j, c, domain : str, optional
        Paths to germline FASTA files for each database slot.

    search_paths : dict, optional
        Engine-specific database paths (for example, pre-built MMseqs2 databases),
        keyed by slot.

    Returns
    -------
    dict
        ``GeneDatabase`` objects, keyed by slot. Slots without a FASTA file are
        omitted.

    """
    search_paths = search_paths or {}
    slots = {
        "v": ("V", v),
        "d": ("D", d),
        "j": ("J", j),
        "c": ("C", c),
        "domain": ("V", domain),
    }
    databases = {}
    for slot, (gene_class, fasta) in slots.items():
        if fasta is None:
            continue
        fasta = os.path.abspath(fasta)
        name = _sample_name(fasta) or slot
        databases[slot] = GeneDatabase(
            name=f"{slot}:{name}",
            gene_class=gene_class,
            fasta=fasta,
            search_path=search_paths.get(slot),
        )
    return databases


def run(
    sequences: Union[str, Sequence, Iterable[Sequence]],
    project_path: Optional[str] = None,
    databases: Optional[dict] = None,
    params: Optional[Union[SearchParameters, dict]] = None,
    engine: str = "local",
    data_directory: Optional[str] = None,
    output_format: Union[str, Iterable[str]] = "airr",
    n_threads: int = 1,
    chunksize: Optional[int] = None,
    verbose: bool = False,
    debug: bool = False,
):
    """
    Search and annotate immune receptor sequences.

    Parameters
    ----------
    sequences : Union[str, Sequence, Iterable[Sequence]]
        The sequences to annotate. Can be one of the following:

          - ``str``: path to a FASTA/Q file, path to a directory of FASTA/Q files, or a single sequence, as a string
          - ``Sequence``: a single ``abutils.Sequence`` object
          - ``Iterable[Sequence]``: an iterable of ``abutils.Sequence`` objects

    project_path : Optional[str] = None
        If provided, the path to a directory in which log and output files will be deposited. If not provided,
        the ``IgResultSet`` for each input is returned instead.

    databases : dict
        ``GeneDatabase`` objects, keyed by slot. See ``build_databases``.

    params : Union[SearchParameters, dict], optional
        Search parameters.

    engine : str, default "local"
        Search engine. Options are ``"local"`` and ``"mmseqs"``.

    data_directory : Optional[str] = None,
        Directory containing domain layout files. If not provided, ``~/.igstar`` and
        ``$IGDATA`` are checked, and if neither contains layout data the run continues
        without domain and frame annotation.

    output_format : Union[str, Iterable[str]] = "airr",
        Format of the output files. Options are "airr", "csv" and "parquet". If more than one
        output format is desired, a list of multiple output formats can be provided.

    n_threads : int = 1,
        Number of parallel search requests within each stage.

    chunksize : Optional[int] = None,
        Number of sequences per search request.

    verbose : bool = False,
        Whether to print verbose output.

    debug : bool = False,
        If ``True``, successfully annotated sequences will be logged in addition to sequences that
        errored during annotation, and temporary search files will be retained.

    """
    if isinstance(params, dict):
        params = SearchParameters.from_dict(params)
    params = params if params is not None else SearchParameters()
    params.validate()
    if isinstance(output_format, str):
        output_format = [output_format]

    # set up log/output directories
    if project_path is not None:
        project_path = os.path.abspath(project_path)
        log_dir = os.path.join(project_path, "logs")
        abutils.io.make_dir(log_dir)
        abutils.log.setup_logging(os.path.join(log_dir, "igstar.log"), debug=debug)
        logger = abutils.log.get_logger("igstar")
        temp_dir = os.path.join(project_path, "tmp")
        for fmt in output_format:
            abutils.io.make_dir(os.path.join(project_path, fmt))
    else:
        log_dir = None
        logger = None
        temp_dir = None

    # domain layout
    # without an explicit data directory, missing layout data disables domain annotation
    try:
        layout_files = get_layout_files(
            params.organism, params.domain_system, data_directory=data_directory
        )
    except ConfigurationError as e:
        if data_directory is not None:
            raise
        layout = None
        if logger is not None:
            logger.warning(f"{e}. Domain and frame annotation is disabled.")
        if verbose:
            print(f"WARNING: {e}. Domain and frame annotation is disabled.\n")
    else:
        layout = load_domain_layout(**layout_files)

    # search engine
    if engine not in ENGINES:
        raise ValueError(
            f"Search engine must be one of {', '.join(ENGINES)}, not '{engine}'"
        )
    if engine == "mmseqs":
        search_engine = MMseqs(
            output_directory=temp_dir, log_directory=log_dir, logger=logger, debug=debug
        )
    else:
        search_engine = LocalAlignment(logger=logger, debug=debug)

    results_to_return = []
    for name, queries in _process_inputs(sequences):
        if verbose:
            print(f"  {name}")
            print("-" * (len(name) + 4))
        results = IgSearch(
            queries=queries,
            databases=databases,
            params=params,
            engine=search_engine,
            layout=layout,
            n_threads=n_threads,
            chunksize=chunksize,
            logger=logger,
            verbose=verbose,
        ).run()
        if project_path is None:
            results_to_return.append(results)
            continue
        for fmt in output_format:
            extension = {"airr": "tsv", "csv": "csv", "parquet": "parquet"}[fmt]
            results.write(
                os.path.join(project_path, fmt, f"{name}.{extension}"),
                output_format=fmt,
                include=list(params.airr_fields) or None,
            )
        # failed queries are always logged, succeeded queries only in debug mode
        results.write_logs(os.path.join(log_dir, name), debug=debug)
        if verbose:
            print(
                f"  {len(results.succeeded):,} annotated, {len(results.failed):,} failed\n"
            )

    if project_path is None:
        if len(results_to_return) == 1:
            return results_to_return[0]
        return results_to_return


def _process_inputs(sequences: Union[str, Sequence, Iterable[Sequence]]):
    """
    Yields (sample name, queries) for each input. Files in a directory are processed
    in natural sort order.
    """
    if isinstance(sequences, str):
        if os.path.isdir(sequences):
            for f in natsorted(abutils.io.list_files(sequences, recursive=True)):
                yield _sample_name(f), f
            return
        if os.path.isfile(sequences):
            yield _sample_name(sequences), sequences
            return
    yield "igstar", sequences


def _sample_name(path: str) -> str:
    basename = os.path.basename(path)
    if basename.endswith(".gz"):
        basename = basename[:-3]
    return ".".join(basename.split(".")[:-1])
