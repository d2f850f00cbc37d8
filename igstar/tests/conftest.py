# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT

"""
Shared pytest fixtures for igstar tests.
"""

import random

import pytest
from abutils import Sequence

from ..annotation.layout import DomainLayout, DomainLayoutTable, JLayout
from ..core.exceptions import SearchEngineError
from ..core.options import GeneDatabase
from ..engines.engine import CandidateAlignment, SearchEngineBase


def random_sequence(length: int, seed: int) -> str:
    rng = random.Random(seed)
    return "".join(rng.choice("ACGT") for _ in range(length))


def make_alignment(
    subject_id: str,
    query_start: int,
    query_end: int,
    subject_start: int = 0,
    subject_end: int = None,
    score: float = 100.0,
    strand: str = "+",
    query_id: str = "q1",
    evalue: float = None,
    **kwargs,
) -> CandidateAlignment:
    """Builds an ungapped alignment; subject span defaults to the query span length."""
    if subject_end is None:
        subject_end = subject_start + (query_end - query_start)
    return CandidateAlignment(
        query_id=query_id,
        subject_id=subject_id,
        strand=strand,
        query_start=query_start,
        query_end=query_end,
        subject_start=subject_start,
        subject_end=subject_end,
        score=score,
        length=kwargs.pop("length", query_end - query_start),
        evalue=evalue,
        **kwargs,
    )


class StaticEngine(SearchEngineBase):
    """
    In-memory search engine that returns pre-defined alignments.

    `hits` maps (gene class, query ID) or (database name, query ID) to alignments
    in complete-query coordinates. Database keys take precedence. Only alignments
    that fall entirely inside a search window are returned, like a real engine
    searching that window.
    """

    def __init__(self, hits=None, fail=None, fatal=None, **kwargs):
        super().__init__(**kwargs)
        self.hits = hits or {}
        self.fail = fail or set()
        self.fatal = fatal
        self.requests = []
        self.cleaned_up = False

    def _search_windows(self, request):
        self.requests.append(request)
        if self.fatal is not None and request.gene_class in self.fatal:
            raise self.fatal[request.gene_class]
        results = {}
        for window in request.windows:
            if (request.gene_class, window.query_id) in self.fail:
                raise SearchEngineError(
                    f"{request.gene_class} search failed", query_ids=[window.query_id]
                )
            alignments = [
                a.shifted(-window.start)
                for a in self._hits_for(request, window.query_id)
                if a.query_start >= window.start and a.query_end <= window.end
            ]
            results[window.query_id] = (alignments, [])
        return results

    def _hits_for(self, request, query_id):
        key = (request.database.name, query_id)
        if key in self.hits:
            return self.hits[key]
        return self.hits.get((request.gene_class, query_id), [])

    def cleanup(self):
        self.cleaned_up = True


# =============================================
#              GERMLINES
# =============================================


V_GENE = "IGHV1-2*02"
V_GENE_NO_LAYOUT = "IGHV9-99*01"
D_GENE = "IGHD3-3*01"
J_GENE = "IGHJ4*02"
C_GENE = "IGHG1*01"


@pytest.fixture
def germlines():
    return {
        "V": [
            Sequence(random_sequence(296, 1), id=V_GENE),
            Sequence(random_sequence(296, 2), id=V_GENE_NO_LAYOUT),
        ],
        "D": [Sequence(random_sequence(31, 3), id=D_GENE)],
        "J": [Sequence(random_sequence(48, 4), id=J_GENE)],
        "C": [Sequence(random_sequence(120, 5), id=C_GENE)],
    }


@pytest.fixture
def databases(germlines):
    return {
        "v": GeneDatabase("v", "V", sequences=germlines["V"]),
        "d": GeneDatabase("d", "D", sequences=germlines["D"]),
        "j": GeneDatabase("j", "J", sequences=germlines["J"]),
    }


@pytest.fixture
def layout():
    return DomainLayoutTable(
        domains={
            V_GENE: DomainLayout(
                boundaries=(0, 75, 75, 99, 99, 150, 150, 174, 174, 288),
                chain_type="VH",
                frame_offset=0,
            )
        },
        j_genes={
            J_GENE: JLayout(chain_type="JH", frame_offset=2, cdr3_end=17, extra_bases=1)
        },
        d_frames={D_GENE: 1},
    )


@pytest.fixture
def query():
    return Sequence(random_sequence(360, 10), id="q1")


@pytest.fixture
def vdj_hits():
    """V[0,296), D[296,310) and J[305,340) on the plus strand of q1."""
    return {
        ("V", "q1"): [make_alignment(V_GENE, 0, 296, score=500.0, evalue=1e-80)],
        ("D", "q1"): [make_alignment(D_GENE, 296, 310, subject_start=8, score=28.0)],
        ("J", "q1"): [make_alignment(J_GENE, 305, 340, subject_start=13, score=70.0)],
    }
