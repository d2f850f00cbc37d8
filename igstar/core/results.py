# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import os
from dataclasses import dataclass, field, fields
from typing import Iterable, List, Optional, Union

import abutils
import polars as pl

from ..annotation.record import AnnotationRecord
from ..engines.engine import CandidateAlignment

__all__ = ["OUTPUT_SCHEMA", "IgResult", "IgResultSet"]


_POLARS_TYPES = {int: pl.Int64, str: pl.Utf8, bool: pl.Boolean, list: pl.Utf8}

OUTPUT_SCHEMA = {
    f.name: _POLARS_TYPES.get(f.type, pl.Utf8) for f in fields(AnnotationRecord)
}


@dataclass
class IgResult:
    """
    Search and annotation results for a single query.

    Attributes
    ----------
    query_id : str
        Query identifier.

    annotation : AnnotationRecord
        Final annotation.

    alignments : list
        Retained alignments (V, D, J and C, each tagged with their gene class).

    messages : list
        Messages produced while searching and annotating the query (for example,
        search engine errors).

    """

    query_id: str
    annotation: AnnotationRecord
    alignments: List[CandidateAlignment] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.annotation.exceptions)

    def alignments_for(self, gene_class: str) -> List[CandidateAlignment]:
        gene_class = gene_class.upper()
        return [a for a in self.alignments if a.gene_class == gene_class]


class IgResultSet:
    """
    Ordered collection of per-query results. Results are in query input order.
    """

    def __init__(self, results: Iterable[IgResult], rid: Optional[str] = None):
        self.results = list(results)
        self.rid = rid

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, key: Union[int, str]) -> IgResult:
        if isinstance(key, str):
            for result in self.results:
                if result.query_id == key:
                    return result
            raise KeyError(key)
        return self.results[key]

    def __repr__(self) -> str:
        return f"IgResultSet({len(self.results)} results, rid={self.rid})"

    @property
    def annotations(self) -> List[AnnotationRecord]:
        return [r.annotation for r in self.results]

    @property
    def failed(self) -> List[IgResult]:
        return [r for r in self.results if r.failed]

    @property
    def succeeded(self) -> List[IgResult]:
        return [r for r in self.results if not r.failed]

    def to_polars(
        self,
        include: Optional[Union[Iterable, str]] = None,
        exclude: Optional[Union[Iterable, str]] = None,
    ) -> pl.DataFrame:
        """
        Returns annotations as a ``polars.DataFrame``, one row per query.

        Parameters
        ----------
        include : Iterable or str, optional
            Fields to include. If not provided, all fields are included.

        exclude : Iterable or str, optional
            Fields to exclude.

        """
        rows = [r.annotation.to_dict(include=include, exclude=exclude) for r in self]
        if rows:
            columns = list(rows[0].keys())
        else:
            columns = list(
                AnnotationRecord().to_dict(include=include, exclude=exclude).keys()
            )
        schema = {c: OUTPUT_SCHEMA.get(c, pl.Utf8) for c in columns}
        return pl.DataFrame(rows, schema=schema)

    def write(
        self,
        path: str,
        output_format: str = "airr",
        include: Optional[Union[Iterable, str]] = None,
        exclude: Optional[Union[Iterable, str]] = None,
    ) -> str:
        """
        Writes annotations to a file.

        Parameters
        ----------
        path : str
            Output file path.

        output_format : str, default "airr"
            Output format. Options are ``"airr"`` (tab-delimited), ``"csv"`` and
            ``"parquet"``.

        Returns
        -------
        str
            Path to the output file.

        """
        output_format = output_format.lower()
        if output_format not in ["airr", "csv", "parquet"]:
            raise ValueError(
                f"Output format must be 'airr', 'csv' or 'parquet', not '{output_format}'"
            )
        path = os.path.abspath(path)
        abutils.io.make_dir(os.path.dirname(path))
        df = self.to_polars(include=include, exclude=exclude)
        if output_format == "parquet":
            df.write_parquet(path)
        elif output_format == "csv":
            df.write_csv(path)
        else:
            df.write_csv(path, separator="\t")
        return path

    def write_logs(self, log_path: str, debug: bool = False) -> List[str]:
        """
        Writes per-query logs. Failed queries are always logged to
        ``<log_path>.failed``; succeeded queries are logged to
        ``<log_path>.succeeded`` only if `debug` is ``True``.

        Returns
        -------
        list
            Paths of the written log files.

        """
        abutils.io.make_dir(os.path.dirname(os.path.abspath(log_path)))
        written = []
        groups = [("failed", self.failed)]
        if debug:
            groups.append(("succeeded", self.succeeded))
        for suffix, results in groups:
            logfile = f"{log_path}.{suffix}"
            with open(logfile, "w") as f:
                for result in results:
                    f.write(result.annotation.format_log())
            written.append(logfile)
        return written
