# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT

from typing import Iterable, Optional

import click

from ..core.exceptions import ConfigurationError
from ..core.igstar import ENGINES, build_databases
from ..core.igstar import run as _run
from ..core.options import SearchParameters
from ..utils import parse_dict_from_string


@click.group()
def cli():
    pass


@cli.command()
@click.argument(
    "input_path",
    type=str,
)
@click.argument(
    "project_path",
    type=str,
)
@click.option(
    "-v",
    "--v_germlines",
    type=str,
    default=None,
    help="Path to a FASTA file of V gene germline sequences",
)
@click.option(
    "-d",
    "--d_germlines",
    type=str,
    default=None,
    help="Path to a FASTA file of D gene germline sequences",
)
@click.option(
    "-j",
    "--j_germlines",
    type=str,
    default=None,
    help="Path to a FASTA file of J gene germline sequences",
)
@click.option(
    "-c",
    "--c_germlines",
    type=str,
    default=None,
    help="Path to a FASTA file of constant region germline sequences",
)
@click.option(
    "--domain_germlines",
    type=str,
    default=None,
    help="Path to a FASTA file of V gene germline sequences with domain layout data, used when the V gene assignment has no domain layout",
)
@click.option(
    "--engine",
    type=click.Choice(list(ENGINES), case_sensitive=False),
    show_default=True,
    default="local",
    help="Search engine",
)
@click.option(
    "--organism",
    type=str,
    show_default=True,
    default="human",
    help="Species origin of the germline databases",
)
@click.option(
    "--domain_system",
    type=click.Choice(["imgt", "kabat"], case_sensitive=False),
    show_default=True,
    default="imgt",
    help="Domain annotation system",
)
@click.option(
    "--sequence_type",
    type=click.Choice(["ig", "tcr"], case_sensitive=False),
    show_default=True,
    default="ig",
    help="Receptor type",
)
@click.option(
    "--molecule",
    type=click.Choice(["nucl", "prot"], case_sensitive=False),
    show_default=True,
    default="nucl",
    help="Query molecule type",
)
@click.option(
    "--data_directory",
    type=str,
    default=None,
    help="Directory containing domain layout files. If not provided, ~/.igstar and $IGDATA are checked.",
)
@click.option(
    "--detect_overlap",
    is_flag=True,
    default=False,
    help="Allow V, D and J gene assignments to overlap",
)
@click.option(
    "--focus_v",
    is_flag=True,
    default=False,
    help="Restrict V gene alignments to the V region",
)
@click.option(
    "--translate",
    is_flag=True,
    default=False,
    help="Translate queries in the V gene coding frame",
)
@click.option(
    "--extend_5prime",
    is_flag=True,
    default=False,
    help="Extend V gene alignments to the 5' end of the germline",
)
@click.option(
    "--extend_3prime",
    is_flag=True,
    default=False,
    help="Extend J gene alignments to the 3' end of the germline",
)
@click.option(
    "--params",
    type=str,
    callback=parse_dict_from_string,
    default=None,
    help="Additional search parameters. Format must be 'key1=val1,key2=val2'",
)
@click.option(
    "-o",
    "--output_format",
    type=click.Choice(["airr", "csv", "parquet"], case_sensitive=False),
    multiple=True,
    show_default=True,
    default=["airr"],
    help="Format of the output files",
)
@click.option(
    "-f",
    "--field",
    "fields",
    type=str,
    multiple=True,
    default=None,
    help="Output field to include. Can be provided multiple times. If not provided, all fields are written.",
)
@click.option(
    "-n",
    "--n_threads",
    type=int,
    show_default=True,
    default=1,
    help="Number of parallel search requests",
)
@click.option(
    "--chunksize",
    type=int,
    default=None,
    help="Number of sequences per search request",
)
@click.option(
    "--verbose/--quiet",
    default=True,
    help="Whether to print verbose output",
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Whether to run in debug mode, which results in temporary files being retained and additional logging.",
)
def run(
    input_path: str,
    project_path: str,
    v_germlines: Optional[str] = None,
    d_germlines: Optional[str] = None,
    j_germlines: Optional[str] = None,
    c_germlines: Optional[str] = None,
    domain_germlines: Optional[str] = None,
    engine: str = "local",
    organism: str = "human",
    domain_system: str = "imgt",
    sequence_type: str = "ig",
    molecule: str = "nucl",
    data_directory: Optional[str] = None,
    detect_overlap: bool = False,
    focus_v: bool = False,
    translate: bool = False,
    extend_5prime: bool = False,
    extend_3prime: bool = False,
    params: Optional[dict] = None,
    output_format: Iterable[str] = ("airr",),
    fields: Optional[Iterable[str]] = None,
    n_threads: int = 1,
    chunksize: Optional[int] = None,
    verbose: bool = True,
    debug: bool = False,
):
    """
    Search and annotate antibody or TCR sequences.

    \b
    command line arguments:
      INPUT_PATH can be a FASTA/Q file or a directory of FASTA/Q files.
      PROJECT_PATH is the path to a directory in which log and output files will be deposited.
    """
    search_params = dict(
        molecule=molecule.lower(),
        organism=organism,
        domain_system=domain_system.lower(),
        sequence_type=sequence_type.lower(),
        detect_overlap=detect_overlap,
        focus_v=focus_v,
        translate=translate,
        extend_5prime=extend_5prime,
        extend_3prime=extend_3prime,
    )
    if fields:
        search_params["airr_fields"] = list(fields)
    search_params.update(params or {})
    try:
        search_params = SearchParameters.from_dict(search_params)
        databases = build_databases(
            v=v_germlines,
            d=d_germlines,
            j=j_germlines,
            c=c_germlines,
            domain=domain_germlines,
        )
        _run(
            sequences=input_path,
            project_path=project_path,
            databases=databases,
            params=search_params,
            engine=engine.lower(),
            data_directory=data_directory,
            output_format=[f.lower() for f in output_format],
            n_threads=n_threads,
            chunksize=chunksize,
            verbose=verbose,
            debug=debug,
        )
    except ConfigurationError as e:
        raise click.UsageError(str(e))
