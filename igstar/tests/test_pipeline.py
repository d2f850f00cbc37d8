# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT

"""
Tests for the search and annotation pipeline.
"""

import abutils
import pytest
from abutils import Sequence

from ..core import pipeline
from ..core.exceptions import ConfigurationError, FatalSearchEngineError
from ..core.options import GeneDatabase, SearchParameters
from ..core.pipeline import IgSearch, run_igsearch
from ..engines.local import LocalAlignment
from ..search.stages import build_v_search
from .conftest import (
    C_GENE,
    D_GENE,
    J_GENE,
    V_GENE,
    V_GENE_NO_LAYOUT,
    StaticEngine,
    make_alignment,
    random_sequence,
)


# =============================================
#              HELPERS
# =============================================


class JunctionEngine(StaticEngine):
    """
    Returns ``("junction", query ID)`` hits for D gene searches restricted to the
    V-J junction.
    """

    def _hits_for(self, request, query_id):
        if request.gene_class == "D" and all(w.length < 20 for w in request.windows):
            return self.hits.get(("junction", query_id), [])
        return super()._hits_for(request, query_id)


def vdj_hits_for(query_id, v_gene=V_GENE, strand="+", query_length=360):
    """
    V[0,296), D[296,310) and J[305,340) on the oriented query.
    """

    def span(start, end):
        if strand == "-":
            return query_length - end, query_length - start
        return start, end

    v = make_alignment(v_gene, *span(0, 296), strand=strand, score=500.0, evalue=1e-80)
    d = make_alignment(
        D_GENE, *span(296, 310), subject_start=8, strand=strand, score=28.0
    )
    j = make_alignment(
        J_GENE, *span(305, 340), subject_start=13, strand=strand, score=70.0
    )
    return {("V", query_id): [v], ("D", query_id): [d], ("J", query_id): [j]}


def search(
    queries, databases, hits=None, params=None, layout=None, engine=None, **kwargs
):
    engine = engine if engine is not None else StaticEngine(hits=hits)
    results = IgSearch(
        queries=queries,
        databases=databases,
        params=params,
        engine=engine,
        layout=layout,
        **kwargs,
    ).run()
    return results, engine


@pytest.fixture
def queries():
    return [Sequence(random_sequence(360, 50 + i), id=f"q{i + 1}") for i in range(6)]


# =============================================
#              ANNOTATION
# =============================================


def test_vdj_annotation(query, databases, vdj_hits, layout):
    params = SearchParameters(dj_overlap_tolerance=5)
    results, _ = search([query], databases, vdj_hits, params=params, layout=layout)
    ab = results["q1"].annotation
    assert not results["q1"].failed
    assert ab.v_call == V_GENE
    assert ab.d_call == D_GENE
    assert ab.j_call == J_GENE
    assert ab.chain_type == "VH"
    assert ab.chain_type_to_show == "VH"
    assert not ab.minus_strand
    assert (ab.v_query_start, ab.v_query_end) == (0, 296)
    assert (ab.d_query_start, ab.d_query_end) == (296, 310)
    assert (ab.j_query_start, ab.j_query_end) == (305, 340)
    assert ab.fwr3_end == 288
    assert ab.cdr3_start == 288
    assert ab.cdr3_end == 309
    assert ab.fwr4_end == 339
    assert ab.v_frame_start == 0
    assert ab.j_frame_start == 306
    assert ab.d_frame_start == 298
    assert ab.query_length == 360


def test_minus_strand_annotation(query, databases, layout):
    hits = vdj_hits_for("q1", strand="-")
    params = SearchParameters(detect_overlap=True)
    results, _ = search([query], databases, hits, params=params, layout=layout)
    ab = results["q1"].annotation
    assert ab.minus_strand
    assert (ab.v_query_start, ab.v_query_end) == (0, 296)
    assert (ab.d_query_start, ab.d_query_end) == (296, 310)
    assert (ab.j_query_start, ab.j_query_end) == (305, 340)
    assert ab.cdr3_start == 288


def test_overlapping_d_triggers_junction_search(query, databases, vdj_hits, layout):
    results, engine = search([query], databases, vdj_hits, layout=layout)
    ab = results["q1"].annotation
    assert ab.d_call is None
    assert ab.j_call == J_GENE
    junction = engine.requests[-1]
    assert junction.gene_class == "D"
    assert [(w.start, w.end) for w in junction.windows] == [(296, 305)]


def test_junction_search_finds_d(query, databases, vdj_hits, layout):
    hits = dict(vdj_hits)
    hits[("junction", "q1")] = [
        make_alignment(D_GENE, 297, 304, subject_start=10, score=14.0)
    ]
    engine = JunctionEngine(hits=hits)
    results, _ = search([query], databases, layout=layout, engine=engine)
    ab = results["q1"].annotation
    assert ab.d_call == D_GENE
    assert (ab.d_query_start, ab.d_query_end) == (297, 304)
    assert ab.d_frame_start == 297


def test_overlap_detection_skips_junction_search(query, databases, vdj_hits, layout):
    params = SearchParameters(detect_overlap=True)
    results, engine = search([query], databases, vdj_hits, params=params, layout=layout)
    assert results["q1"].annotation.d_call == D_GENE
    assert [r.gene_class for r in engine.requests] == ["V", "D", "J"]


def test_v_gene_not_in_layout(query, databases, layout):
    hits = vdj_hits_for("q1", v_gene=V_GENE_NO_LAYOUT)
    params = SearchParameters(detect_overlap=True)
    results, _ = search([query], databases, hits, params=params, layout=layout)
    ab = results["q1"].annotation
    assert ab.v_call == V_GENE_NO_LAYOUT
    assert ab.d_call == D_GENE
    assert ab.j_call == J_GENE
    assert ab.domain_subject is None
    assert ab.fwr1_start is None
    assert ab.fwr3_end is None
    assert ab.v_frame_start is None
    assert ab.cdr3_start == 296


def test_domain_database_fallback(queries, databases, germlines, layout):
    domain_db = GeneDatabase("domain", "V", sequences=germlines["V"][:1])
    databases = dict(databases, domain=domain_db)
    hits = {}
    hits.update(vdj_hits_for("q1", v_gene=V_GENE_NO_LAYOUT))
    hits.update(vdj_hits_for("q2"))
    hits[("domain", "q1")] = [make_alignment(V_GENE, 0, 296, score=450.0)]
    params = SearchParameters(detect_overlap=True)
    results, engine = search(queries[:2], databases, hits, params=params, layout=layout)
    q1 = results["q1"].annotation
    assert q1.v_call == V_GENE_NO_LAYOUT
    assert q1.domain_subject == V_GENE
    assert q1.fwr3_end == 288
    # only queries whose V gene has no domain layout are searched
    domain_requests = [r for r in engine.requests if r.database.name == "domain"]
    assert sum([r.query_ids for r in domain_requests], []) == ["q1"]
    assert results["q2"].annotation.domain_subject == V_GENE


def test_constant_region(query, databases, germlines, vdj_hits, layout):
    databases = dict(databases, c=GeneDatabase("c", "C", sequences=germlines["C"]))
    hits = dict(vdj_hits)
    hits[("C", "q1")] = [make_alignment(C_GENE, 342, 360, subject_start=0, score=30.0)]
    results, _ = search([query], databases, hits, layout=layout)
    ab = results["q1"].annotation
    assert ab.c_call == C_GENE
    assert ab.c_chain_type == "CH"
    assert (ab.c_region_start, ab.c_region_end) == (342, 360)
    assert [a.subject_id for a in results["q1"].alignments_for("C")] == [C_GENE]


def test_no_v_hit(query, databases, layout):
    results, engine = search([query], databases, {}, layout=layout)
    ab = results["q1"].annotation
    assert ab.v_call is None
    assert ab.j_call is None
    assert ab.cdr3_start is None
    assert not results["q1"].failed
    # D/J searches are skipped for queries without a V gene
    assert [r.gene_class for r in engine.requests] == ["V"]


def test_no_v_hit_unrestricted_fallback(query, databases, layout):
    hits = vdj_hits_for("q1")
    del hits[("V", "q1")]
    params = SearchParameters(unrestricted_fallback=True, detect_overlap=True)
    results, _ = search([query], databases, hits, params=params, layout=layout)
    ab = results["q1"].annotation
    assert ab.v_call is None
    assert ab.j_call == J_GENE
    assert ab.d_call == D_GENE


def test_translation(query, databases, vdj_hits, layout):
    params = SearchParameters(translate=True, detect_overlap=True)
    results, _ = search([query], databases, vdj_hits, params=params, layout=layout)
    assert results["q1"].annotation.sequence_aa == abutils.tl.translate(query.sequence)


def test_protein_queries(databases, layout):
    query = Sequence("QVQLVQSGAEVKKPGASVKVSCKASGYTFT", id="q1")
    hits = {("V", "q1"): [make_alignment(V_GENE, 0, 30, score=150.0)]}
    params = SearchParameters(molecule="prot", translate=True)
    results, engine = search(
        [query], {"v": databases["v"]}, hits, params=params, layout=layout
    )
    ab = results["q1"].annotation
    assert ab.v_call == V_GENE
    assert ab.fwr1_start == 0
    assert ab.v_frame_start is None
    assert ab.sequence_aa is None
    assert [r.gene_class for r in engine.requests] == ["V"]


def test_alignments_are_tagged_and_truncated(query, databases, vdj_hits, layout):
    hits = dict(vdj_hits)
    hits[("V", "q1")] = [
        make_alignment(V_GENE, 0, 296, score=500.0),
        make_alignment(V_GENE_NO_LAYOUT, 0, 296, score=400.0),
    ]
    params = SearchParameters(num_alignments_v=1, detect_overlap=True)
    results, _ = search([query], databases, hits, params=params, layout=layout)
    result = results["q1"]
    assert [a.gene_class for a in result.alignments] == ["V", "D", "J"]
    assert result.alignments_for("v")[0].subject_id == V_GENE


# =============================================
#            ORDERING AND DETERMINISM
# =============================================


def build_hits(queries):
    hits = {}
    for i, q in enumerate(queries[:-1]):
        v_gene = V_GENE if i % 2 == 0 else V_GENE_NO_LAYOUT
        strand = "+" if i % 3 else "-"
        hits.update(vdj_hits_for(q.id, v_gene=v_gene, strand=strand))
    return hits


def test_every_query_yields_a_result_in_input_order(queries, databases, layout):
    results, _ = search(queries, databases, build_hits(queries), layout=layout)
    assert len(results) == len(queries)
    assert [r.query_id for r in results] == [q.id for q in queries]
    assert results[-1].annotation.v_call is None


def test_parallel_runs_are_deterministic(queries, databases, layout):
    hits = build_hits(queries)
    serial, _ = search(queries, databases, hits, layout=layout)
    parallel, _ = search(
        queries, databases, hits, layout=layout, n_threads=4, chunksize=2
    )
    assert serial.to_polars().to_dicts() == parallel.to_polars().to_dicts()


def test_repeated_runs_are_deterministic(queries, databases, layout):
    hits = build_hits(queries)
    first, _ = search(queries, databases, hits, layout=layout, n_threads=3)
    second, _ = search(queries, databases, hits, layout=layout, n_threads=3)
    assert first.to_polars().to_dicts() == second.to_polars().to_dicts()


# =============================================
#                ERRORS
# =============================================


def test_search_engine_error_is_isolated(queries, databases, layout):
    hits = build_hits(queries)
    engine = StaticEngine(hits=hits, fail={("V", "q2")})
    results, _ = search(queries, databases, layout=layout, engine=engine)
    q2 = results["q2"]
    assert q2.annotation.v_call is None
    assert any("V search failed" in m for m in q2.messages)
    assert results["q1"].annotation.v_call == V_GENE
    assert not results["q1"].messages


class BrokenEngine(StaticEngine):
    def _search_windows(self, request):
        if request.gene_class == "J" and "q2" in request.query_ids:
            raise TypeError("unexpected result type")
        return super()._search_windows(request)


def test_unexpected_engine_exception_is_isolated(queries, databases, layout):
    engine = BrokenEngine(hits=build_hits(queries))
    results, _ = search(queries, databases, layout=layout, engine=engine)
    q2 = results["q2"]
    assert q2.annotation.v_call == V_GENE_NO_LAYOUT
    assert q2.annotation.j_call is None
    assert any("J search failed" in m for m in q2.messages)
    assert results["q1"].annotation.j_call == J_GENE


def test_stage_results_are_sorted_by_evalue(query, databases):
    weaker = make_alignment(V_GENE, 0, 296, score=500.0, evalue=1e-80)
    stronger = make_alignment(V_GENE_NO_LAYOUT, 0, 290, score=400.0, evalue=1e-90)
    engine = StaticEngine(hits={("V", "q1"): [weaker, stronger]})
    igsearch = IgSearch(queries=[query], databases=databases, engine=engine)
    request = build_v_search(igsearch.queries, databases["v"], igsearch.params)
    results = igsearch._run_stage(request)
    assert [a.subject_id for a in results["q1"].alignments] == [
        V_GENE_NO_LAYOUT,
        V_GENE,
    ]


def test_single_gene_database_with_local_alignment():
    germline = random_sequence(280, 60)
    queries = [
        Sequence(germline[20:], id="plus"),
        Sequence(abutils.tl.reverse_complement(germline[20:]), id="minus"),
    ]
    databases = {
        "v": GeneDatabase("v", "V", sequences=[Sequence(germline, id=V_GENE)])
    }
    results, _ = search(
        queries,
        databases,
        params=SearchParameters(search_dj=False),
        engine=LocalAlignment(),
    )
    for result, minus_strand in zip(results, [False, True]):
        annotation = result.annotation
        assert not result.failed
        assert annotation.v_call == V_GENE
        assert annotation.minus_strand == minus_strand
        assert (annotation.v_query_start, annotation.v_query_end) == (0, 260)


def test_fatal_search_engine_error_aborts(queries, databases, layout):
    engine = StaticEngine(
        hits=build_hits(queries),
        fatal={"J": FatalSearchEngineError("database offline")},
    )
    with pytest.raises(FatalSearchEngineError):
        search(queries, databases, layout=layout, engine=engine)
    assert engine.cleaned_up


def test_missing_germline_database_is_fatal(query):
    databases = {"v": GeneDatabase("v", "V", fasta="/does/not/exist.fasta")}
    params = SearchParameters(search_dj=False)
    with pytest.raises(FatalSearchEngineError):
        search([query], databases, {}, params=params)


def test_annotation_exception_is_recorded(queries, databases, layout, monkeypatch):
    original = pipeline.annotate_v

    def annotate_v(alignments, query_length, layout=None):
        if alignments[0].subject_id == V_GENE_NO_LAYOUT:
            raise ValueError("unexpected V gene")
        return original(alignments, query_length, layout)

    monkeypatch.setattr(pipeline, "annotate_v", annotate_v)
    results, _ = search(queries, databases, build_hits(queries), layout=layout)
    assert results["q2"].failed
    assert not results["q1"].failed
    assert results["q1"].annotation.v_call == V_GENE
    assert len(results.failed) == 2


# =============================================
#             CONFIGURATION
# =============================================


def test_v_database_required(query, databases):
    del databases["v"]
    engine = StaticEngine()
    with pytest.raises(ConfigurationError):
        search([query], databases, engine=engine)
    assert engine.requests == []


def test_domain_database_used_for_v_search(query, germlines):
    databases = {"domain": GeneDatabase("domain", "V", sequences=germlines["V"])}
    hits = {("V", "q1"): [make_alignment(V_GENE, 0, 296)]}
    params = SearchParameters(search_dj=False)
    results, _ = search([query], databases, hits, params=params)
    assert results["q1"].annotation.v_call == V_GENE


def test_dj_search_requires_d_and_j_databases(query, databases):
    del databases["d"]
    with pytest.raises(ConfigurationError):
        search([query], databases, {})


def test_database_gene_class_must_match_slot(query, databases, germlines):
    databases["j"] = GeneDatabase("j", "D", sequences=germlines["D"])
    with pytest.raises(ConfigurationError):
        search([query], databases, {})


def test_unknown_database_slot(query, databases, germlines):
    databases["x"] = GeneDatabase("x", "V", sequences=germlines["V"])
    with pytest.raises(ConfigurationError):
        search([query], databases, {})


def test_duplicate_query_ids(query, databases):
    duplicate = Sequence(query.sequence, id=query.id)
    with pytest.raises(ConfigurationError):
        search([query, duplicate], databases, {})


@pytest.mark.parametrize("kwargs", [{"n_threads": 0}, {"chunksize": 0}])
def test_invalid_parallelism(query, databases, kwargs):
    with pytest.raises(ConfigurationError):
        search([query], databases, {}, **kwargs)


def test_invalid_parameters(query, databases):
    with pytest.raises(ConfigurationError):
        search([query], databases, {}, params=SearchParameters(min_d_match=2))


def test_run_igsearch_accepts_params_dict(query, databases, vdj_hits, layout):
    results = run_igsearch(
        [query],
        databases,
        params={"detect_overlap": True},
        engine=StaticEngine(hits=vdj_hits),
        layout=layout,
    )
    assert results["q1"].annotation.d_call == D_GENE


def test_query_inputs(tmp_path, databases, vdj_hits, layout):
    fasta = tmp_path / "queries.fasta"
    fasta.write_text(f">q1\n{random_sequence(360, 10)}\n")
    params = SearchParameters(detect_overlap=True)
    results, _ = search(str(fasta), databases, vdj_hits, params=params, layout=layout)
    assert results["q1"].annotation.j_call == J_GENE
