# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

import polars as pl
from natsort import natsorted

from ..core.exceptions import ConfigurationError

__all__ = [
    "DomainLayout",
    "JLayout",
    "DomainLayoutTable",
    "load_domain_layout",
    "get_layout_files",
    "infer_chain_type",
    "parse_locus",
]


LOCUS_CHAINS = {
    "IGH": "H",
    "IGK": "K",
    "IGL": "L",
    "TRA": "A",
    "TRB": "B",
    "TRG": "G",
    "TRD": "D",
}


@dataclass(frozen=True)
class DomainLayout:
    """
    Canonical domain layout of a germline V gene.

    `boundaries` holds the start and end (0-based, half-open) of FWR1, CDR1, FWR2,
    CDR2 and FWR3 on the germline sequence. Undefined boundaries are ``None``.
    """

    boundaries: Tuple[Optional[int], ...]
    chain_type: Optional[str] = None
    frame_offset: Optional[int] = None


@dataclass(frozen=True)
class JLayout:
    """
    Layout data for a germline J gene.

    `cdr3_end` is the (exclusive) end of CDR3 on the germline J gene and
    `extra_bases` is the number of germline bases past the last complete J codon.
    """

    chain_type: Optional[str] = None
    frame_offset: Optional[int] = None
    cdr3_end: Optional[int] = None
    extra_bases: Optional[int] = None


class DomainLayoutTable:
    """
    Read-only lookup of germline domain layouts, chain types and frame offsets.

    The table is built once per run and never modified, so it can be shared between
    threads without locking. Lookups of unknown genes return ``None``; an unknown
    germline gene is an expected condition, not an error.
    """

    def __init__(
        self,
        domains: Optional[Dict[str, DomainLayout]] = None,
        j_genes: Optional[Dict[str, JLayout]] = None,
        d_frames: Optional[Dict[str, int]] = None,
    ):
        self._domains = MappingProxyType(dict(domains or {}))
        self._j_genes = MappingProxyType(dict(j_genes or {}))
        self._d_frames = MappingProxyType(dict(d_frames or {}))

    def __contains__(self, gene_id: str) -> bool:
        return gene_id in self._domains

    def __len__(self) -> int:
        return len(self._domains)

    def __repr__(self) -> str:
        return (
            f"DomainLayoutTable({len(self._domains)} V genes, "
            f"{len(self._j_genes)} J genes, {len(self._d_frames)} D genes)"
        )

    @property
    def v_genes(self) -> list:
        return natsorted(self._domains.keys())

    @property
    def j_genes(self) -> list:
        return natsorted(self._j_genes.keys())

    def get_domain_info(self, gene_id: str) -> Optional[Tuple[Optional[int], ...]]:
        layout = self._domains.get(gene_id)
        return layout.boundaries if layout is not None else None

    def get_domain_chain_type(self, gene_id: str) -> Optional[str]:
        layout = self._domains.get(gene_id)
        return layout.chain_type if layout is not None else None

    def get_frame_offset(self, gene_id: str) -> Optional[int]:
        """
        Coding frame offset of a V or J germline gene.
        """
        if gene_id in self._domains:
            return self._domains[gene_id].frame_offset
        if gene_id in self._j_genes:
            return self._j_genes[gene_id].frame_offset
        return None

    def get_j_cdr3_end(self, gene_id: str) -> Optional[int]:
        layout = self._j_genes.get(gene_id)
        return layout.cdr3_end if layout is not None else None

    def get_fwr4_extra_bases(self, gene_id: str) -> Optional[int]:
        layout = self._j_genes.get(gene_id)
        return layout.extra_bases if layout is not None else None

    def get_dj_chain_type(self, gene_id: str) -> Optional[str]:
        layout = self._j_genes.get(gene_id)
        return layout.chain_type if layout is not None else None

    def get_d_frame(self, gene_id: str) -> Optional[int]:
        return self._d_frames.get(gene_id)

    def chain_type(self, gene_id: str, gene_class: str) -> Optional[str]:
        """
        Chain type of a germline gene, from the table if present or inferred from
        the IMGT gene name otherwise.
        """
        gene_class = gene_class.upper()
        if gene_class == "V":
            chain_type = self.get_domain_chain_type(gene_id)
        elif gene_class == "J":
            chain_type = self.get_dj_chain_type(gene_id)
        else:
            chain_type = None
        if chain_type is None:
            chain_type = infer_chain_type(gene_id, gene_class)
        return chain_type


# ------------------------------
#           LOADING
# ------------------------------


def load_domain_layout(
    domain_file: Optional[str] = None,
    aux_file: Optional[str] = None,
    d_frame_file: Optional[str] = None,
) -> DomainLayoutTable:
    """
    Builds a ``DomainLayoutTable`` from domain annotation files.

    Parameters
    ----------
    domain_file : str, optional
        Tab-delimited V gene domain file. Columns are the gene name, the
        1-based start and end of FWR1, CDR1, FWR2, CDR2 and FWR3 (10 columns),
        the chain type and the coding frame offset. Lines starting with ``#`` are
        ignored.

    aux_file : str, optional
        Tab-delimited J gene file. Columns are the gene name, the coding
        frame offset, the chain type, the (0-based) last position of CDR3 and the
        number of bases past the last complete codon.

    d_frame_file : str, optional
        Tab-delimited D gene file with two columns: gene name and reading
        frame offset.

    Returns
    -------
    DomainLayoutTable

    Raises
    ------
    ConfigurationError
        If a file does not exist or contains a malformed line.

    """
    domains = {}
    j_genes = {}
    d_frames = {}
    for fields in _read_table(domain_file, min_columns=11, max_columns=13):
        name = fields[0]
        coords = [_to_int(f, domain_file) for f in fields[1:11]]
        boundaries = tuple(
            (c - 1 if i % 2 == 0 else c) if c is not None and c > 0 else None
            for i, c in enumerate(coords)
        )
        chain_type = _optional(fields, 11)
        frame = _to_int(_optional(fields, 12), domain_file)
        if frame is not None and frame < 0:
            frame = None
        domains[name] = DomainLayout(boundaries, chain_type, frame)
    for fields in _read_table(aux_file, min_columns=3, max_columns=5):
        name = fields[0]
        frame = _to_int(fields[1], aux_file)
        cdr3_end = _to_int(_optional(fields, 3), aux_file)
        extra = _to_int(_optional(fields, 4), aux_file)
        j_genes[name] = JLayout(
            chain_type=fields[2],
            frame_offset=frame if frame is not None and frame >= 0 else None,
            cdr3_end=cdr3_end + 1 if cdr3_end is not None and cdr3_end >= 0 else None,
            extra_bases=extra if extra is not None and extra >= 0 else None,
        )
    for fields in _read_table(d_frame_file, min_columns=2, max_columns=2):
        frame = _to_int(fields[1], d_frame_file)
        if frame is not None and frame >= 0:
            d_frames[fields[0]] = frame
    return DomainLayoutTable(domains=domains, j_genes=j_genes, d_frames=d_frames)


def get_layout_files(
    organism: str,
    domain_system: str = "imgt",
    data_directory: Optional[str] = None,
) -> dict:
    """
    Get the paths to the domain layout files for an organism. If `data_directory`
    is not provided, the addon directory (``~/.igstar``) is checked first, followed
    by the directory in the ``IGDATA`` environment variable.

    Layout files are expected at:

      - ``internal_data/{organism}/{organism}.ndm.{domain_system}``
      - ``optional_file/{organism}_gl.aux``
      - ``internal_data/{organism}/{organism}.dframe``

    Parameters
    ----------
    organism : str
        Species origin, like ``"human"``.

    domain_system : str, default "imgt"
        Domain system, either ``"imgt"`` or ``"kabat"``.

    data_directory : str, optional
        Root directory containing layout files.

    Returns
    -------
    dict
        Paths keyed by ``"domain_file"``, ``"aux_file"`` and ``"d_frame_file"``.
        Files that don't exist are ``None``.

    Raises
    ------
    ConfigurationError
        If the domain file cannot be found.

    """
    organism = organism.lower()
    domain_system = domain_system.lower()
    candidates = []
    if data_directory is not None:
        candidates.append(data_directory)
    else:
        candidates.append(os.path.expanduser("~/.igstar"))
        if os.environ.get("IGDATA"):
            candidates.append(os.environ["IGDATA"])
    for root in candidates:
        domain_file = os.path.join(
            root, f"internal_data/{organism}/{organism}.ndm.{domain_system}"
        )
        if not os.path.isfile(domain_file):
            continue
        aux_file = os.path.join(root, f"optional_file/{organism}_gl.aux")
        d_frame_file = os.path.join(root, f"internal_data/{organism}/{organism}.dframe")
        return {
            "domain_file": domain_file,
            "aux_file": aux_file if os.path.isfile(aux_file) else None,
            "d_frame_file": d_frame_file if os.path.isfile(d_frame_file) else None,
        }
    raise ConfigurationError(
        f"Domain layout data for {organism} ({domain_system}) not found in: {', '.join(candidates)}"
    )


# ------------------------------
#         CHAIN TYPES
# ------------------------------


def parse_locus(gene_id: str) -> Optional[str]:
    """
    Parses the IMGT locus (``"IGH"``, ``"TRA"``, etc.) from a germline gene name.
    Mixed-species names (``"IGHV1-2*02__human"``) are supported.
    """
    if not gene_id:
        return None
    locus = gene_id.split("__")[0][:3].upper()
    return locus if locus in LOCUS_CHAINS else None


def infer_chain_type(gene_id: str, gene_class: str) -> Optional[str]:
    """
    Infers a chain type label (``"VH"``, ``"JK"``, ``"DB"``, ``"CH"``, etc.) from an
    IMGT germline gene name. Returns ``None`` for non-IMGT names.
    """
    locus = parse_locus(gene_id)
    if locus is None:
        return None
    return f"{gene_class.upper()}{LOCUS_CHAINS[locus]}"


def _read_table(
    path: Optional[str], min_columns: int, max_columns: int
) -> List[tuple]:
    if path is None:
        return []
    if not os.path.isfile(path):
        raise ConfigurationError(f"Domain layout file not found: {path}")
    try:
        df = pl.read_csv(
            path,
            separator="\t",
            has_header=False,
            comment_prefix="#",
            schema={f"column_{i + 1}": pl.Utf8 for i in range(max_columns)},
            truncate_ragged_lines=True,
        )
    except pl.exceptions.NoDataError:
        return []
    except pl.exceptions.PolarsError as e:
        raise ConfigurationError(f"Unable to read {path}: {e}") from e
    df = df.with_columns(pl.all().str.strip_chars()).filter(
        pl.col("column_1").is_not_null() & (pl.col("column_1") != "")
    )
    rows = df.rows()
    for row_number, row in enumerate(rows, 1):
        if any(v is None or v == "" for v in row[:min_columns]):
            raise ConfigurationError(
                f"Malformed row {row_number} in {path}: expected at least {min_columns} columns"
            )
    return rows


def _optional(fields: tuple, index: int) -> Optional[str]:
    if len(fields) <= index or fields[index] == "":
        return None
    return fields[index]


def _to_int(value: Optional[str], path: Optional[str]) -> Optional[int]:
    if value is None or value.upper() in ["N/A", "NA", "."]:
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer '{value}' in {path}")
