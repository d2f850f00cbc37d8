# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import os
from dataclasses import dataclass, field, fields
from typing import Iterable, Optional

from ..annotation.record import OUTPUT_FIELDS
from .exceptions import ConfigurationError

__all__ = [
    "GENE_CLASSES",
    "DATABASE_SLOTS",
    "GeneDatabase",
    "SearchParameters",
]


GENE_CLASSES = ["V", "D", "J", "C"]

# user V, user D, user J, default V (carries domain layout data), constant
DATABASE_SLOTS = {
    "v": "V",
    "d": "D",
    "j": "J",
    "domain": "V",
    "c": "C",
}


@dataclass(frozen=True)
class GeneDatabase:
    """
    Handle to a searchable germline gene collection for a single gene class.

    Parameters
    ----------
    name : str
        Name of the database (used in log messages and output).

    gene_class : str
        Gene class of the database. One of ``"V"``, ``"D"``, ``"J"`` or ``"C"``.

    fasta : str, optional
        Path to a FASTA file of germline sequences. Used to populate subject
        metadata (length, label) and by the ``LocalAlignment`` engine for searching.

    search_path : str, optional
        Path to an engine-specific database (for example, a pre-built MMseqs2
        database). If not provided, `fasta` is used.

    sequences : Iterable[Sequence], optional
        In-memory germline sequences. Takes precedence over `fasta` when both
        are provided.

    remote : bool, default False
        Whether the database lives on a remote search service.

    """

    name: str
    gene_class: str
    fasta: Optional[str] = None
    search_path: Optional[str] = None
    sequences: Optional[tuple] = None
    remote: bool = False

    def __post_init__(self):
        object.__setattr__(self, "gene_class", self.gene_class.upper())
        if self.sequences is not None:
            object.__setattr__(self, "sequences", tuple(self.sequences))

    @property
    def path(self) -> Optional[str]:
        return self.search_path if self.search_path is not None else self.fasta

    def exists(self) -> bool:
        """
        Whether the database can be reached. Remote databases are assumed to exist.
        """
        if self.remote or self.sequences is not None:
            return True
        return self.path is not None and os.path.exists(self.path)


@dataclass(frozen=True)
class SearchParameters:
    """
    Run-wide search and annotation parameters. Constructed once by the caller and
    never modified during a run.

    Parameters
    ----------
    molecule : str, default "nucl"
        Query molecule type. Options are ``"nucl"`` and ``"prot"``. Protein queries
        are only searched against V genes.

    organism : str, default "human"
        Species origin of the germline databases. Used to locate domain layout files.

    domain_system : str, default "imgt"
        Domain annotation system. Options are ``"imgt"`` and ``"kabat"``.

    sequence_type : str, default "ig"
        Receptor type. Options are ``"ig"`` and ``"tcr"``.

    min_d_match : int, default 5
        Minimum D gene match length, used as the word size for D gene searches.

    v_penalty, d_penalty, j_penalty : int
        Mismatch penalties (negative) for V, D and J searches.

    num_alignments_v, num_alignments_d, num_alignments_j, num_alignments_c : int
        Number of alignments retained in the final results for each gene class.

    focus_v : bool, default False
        Restrict V alignments to the V region (ending at the end of FWR3).

    translate : bool, default False
        Translate the oriented query sequence in the V coding frame.

    extend_5prime : bool, default False
        Extend V alignments to the 5' end of the germline when the gap is short.

    extend_3prime : bool, default False
        Extend J alignments to the 3' end of the germline when the gap is short.

    min_v_length, min_j_length : int
        Minimum alignment length for V and J alignments.

    detect_overlap : bool, default False
        Allow V, D and J assignments to overlap. If ``False``, overlaps larger than
        `dj_overlap_tolerance` are rejected and, if no D gene fits, a second D gene
        search restricted to the V-J junction is performed.

    dj_overlap_tolerance : int, default 0
        Number of overlapping bases tolerated when `detect_overlap` is ``False``.

    search_dj : bool, default True
        Whether to search D and J germline databases (nucleotide queries only).

    unrestricted_fallback : bool, default False
        Search D/J/C genes across the entire query when no prior (V or J) boundary
        is available. By default, such queries are skipped for that gene class.

    hitlist_size : int, default 25
        Number of candidate alignments requested from the search engine per query
        and gene class.

    max_extension : int, default 30
        Longest gap closed by 5'/3' alignment extension.

    airr_fields : tuple, optional
        Annotation fields written to output files (``sequence_id`` is always
        included). If empty, all fields are written.

    """

    molecule: str = "nucl"
    organism: str = "human"
    domain_system: str = "imgt"
    sequence_type: str = "ig"
    min_d_match: int = 5
    v_penalty: int = -1
    d_penalty: int = -4
    j_penalty: int = -3
    num_alignments_v: int = 3
    num_alignments_d: int = 3
    num_alignments_j: int = 3
    num_alignments_c: int = 3
    focus_v: bool = False
    translate: bool = False
    extend_5prime: bool = False
    extend_3prime: bool = False
    min_v_length: int = 0
    min_j_length: int = 0
    detect_overlap: bool = False
    dj_overlap_tolerance: int = 0
    search_dj: bool = True
    unrestricted_fallback: bool = False
    hitlist_size: int = 25
    max_extension: int = 30
    airr_fields: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, params: Optional[dict] = None) -> "SearchParameters":
        """
        Builds ``SearchParameters`` from a ``dict``. Unknown keys raise a
        ``ConfigurationError`` rather than being silently ignored.
        """
        params = params if params is not None else {}
        known = {f.name for f in fields(cls)}
        unknown = [k for k in params if k not in known]
        if unknown:
            raise ConfigurationError(
                f"Unknown search parameter(s): {', '.join(sorted(unknown))}"
            )
        airr_fields = params.get("airr_fields")
        if isinstance(airr_fields, str):
            params = dict(params, airr_fields=(airr_fields,))
        elif airr_fields is not None and not isinstance(airr_fields, tuple):
            params = dict(params, airr_fields=tuple(airr_fields))
        return cls(**params)

    @property
    def is_protein(self) -> bool:
        return self.molecule == "prot"

    def num_alignments(self, gene_class: str) -> int:
        return getattr(self, f"num_alignments_{gene_class.lower()}")

    def penalty(self, gene_class: str) -> int:
        # constant region searches use the V gene penalty
        if gene_class.upper() == "C":
            return self.v_penalty
        return getattr(self, f"{gene_class.lower()}_penalty")

    def validate(self) -> None:
        """
        Checks the parameters for internal consistency.

        Raises
        ------
        ConfigurationError
            If any parameter is invalid.

        """
        if self.molecule not in ["nucl", "prot"]:
            raise ConfigurationError(
                f"Molecule type must be 'nucl' or 'prot', not '{self.molecule}'"
            )
        if self.sequence_type not in ["ig", "tcr"]:
            raise ConfigurationError(
                f"Sequence type must be 'ig' or 'tcr', not '{self.sequence_type}'"
            )
        if self.domain_system not in ["imgt", "kabat"]:
            raise ConfigurationError(
                f"Domain system must be 'imgt' or 'kabat', not '{self.domain_system}'"
            )
        if self.min_d_match < 4:
            raise ConfigurationError(
                f"min_d_match must be at least 4 (got {self.min_d_match})"
            )
        for gene_class in ["V", "D", "J"]:
            if self.penalty(gene_class) >= 0:
                raise ConfigurationError(
                    f"The {gene_class} gene mismatch penalty must be negative (got {self.penalty(gene_class)})"
                )
        for gene_class in GENE_CLASSES:
            if self.num_alignments(gene_class) < 0:
                raise ConfigurationError(
                    f"num_alignments_{gene_class.lower()} must not be negative"
                )
        if self.min_v_length < 0 or self.min_j_length < 0:
            raise ConfigurationError("Minimum V/J alignment lengths must not be negative")
        if self.dj_overlap_tolerance < 0:
            raise ConfigurationError("dj_overlap_tolerance must not be negative")
        if self.hitlist_size < 1:
            raise ConfigurationError("hitlist_size must be at least 1")
        if self.max_extension < 0:
            raise ConfigurationError("max_extension must not be negative")
        unknown_fields = [f for f in self.airr_fields if f not in OUTPUT_FIELDS]
        if unknown_fields:
            raise ConfigurationError(
                f"Unknown output field(s): {', '.join(unknown_fields)}"
            )
        if self.is_protein and (self.extend_3prime or self.detect_overlap):
            raise ConfigurationError(
                "J gene extension and overlap detection require nucleotide queries"
            )
