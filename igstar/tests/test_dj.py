# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT

"""
Tests for D/J gene resolution.
"""

from ..annotation.dj import annotate_dj, resolve_d_only, resolve_dj
from ..annotation.domains import annotate_domains
from .conftest import D_GENE, J_GENE, V_GENE, make_alignment


QUERY_LENGTH = 360


def vdj(strand="+"):
    v = make_alignment(V_GENE, 0, 296, strand=strand)
    d = make_alignment(D_GENE, 296, 310, subject_start=8, strand=strand)
    j = make_alignment(J_GENE, 305, 340, subject_start=13, strand=strand)
    return v, d, j


def resolve(d_candidates, j_candidates, **kwargs):
    options = dict(
        v_end=296,
        chain_type="VH",
        minus_strand=False,
        query_length=QUERY_LENGTH,
    )
    options.update(kwargs)
    return resolve_dj(d_candidates, j_candidates, **options)


# ----------------------------
#        OVERLAP
# ----------------------------


def test_overlapping_d_accepted_within_tolerance():
    v, d, j = vdj()
    resolution = resolve([d], [j], overlap_tolerance=5)
    assert resolution.d is d
    assert resolution.j is j
    assert not resolution.needs_no_overlap_d_search
    # CDR3 starts at the end of the V gene when there's no domain layout
    partial = annotate_domains(v, QUERY_LENGTH, None, j_alignment=resolution.j)
    assert partial["cdr3_start"] == 296


def test_overlapping_d_accepted_with_overlap_detection():
    _, d, j = vdj()
    resolution = resolve([d], [j], detect_overlap=True)
    assert resolution.d is d
    assert not resolution.needs_no_overlap_d_search


def test_overlapping_d_rejected_without_tolerance():
    _, d, j = vdj()
    resolution = resolve([d], [j])
    assert resolution.d is None
    assert resolution.j is j
    assert resolution.needs_no_overlap_d_search


def test_d_overlapping_v_rejected():
    _, _, j = vdj()
    d = make_alignment(D_GENE, 290, 302, subject_start=2)
    resolution = resolve([d], [j], overlap_tolerance=5)
    assert resolution.d is None


def test_j_must_end_past_v():
    j = make_alignment(J_GENE, 250, 290, subject_start=8)
    resolution = resolve([], [j], detect_overlap=True)
    assert resolution.j is None


def test_j_overlap_tolerance():
    j = make_alignment(J_GENE, 292, 330, subject_start=10)
    assert resolve([], [j]).j is None
    assert resolve([], [j], overlap_tolerance=4).j is j


def test_highest_ranked_compatible_j_selected():
    _, _, j = vdj()
    kappa = make_alignment("IGKJ1*01", 300, 338, score=90.0)
    resolution = resolve([], [kappa, j])
    assert resolution.j is j


def test_j_must_be_on_v_strand():
    _, _, j = vdj(strand="-")
    assert resolve([], [j]).j is None


def test_unknown_chain_type_accepts_any_j():
    kappa = make_alignment("IGKJ1*01", 300, 338)
    resolution = resolve([], [kappa], chain_type=None)
    assert resolution.j is kappa


def test_no_v_end_is_unconstrained():
    _, d, j = vdj()
    resolution = resolve([d], [j], v_end=None, detect_overlap=True)
    assert resolution.j is j
    assert resolution.d is d


def test_light_chain_has_no_d():
    d = make_alignment(D_GENE, 300, 312)
    j = make_alignment("IGKJ1*01", 315, 350)
    resolution = resolve([d], [j], chain_type="VK")
    assert resolution.d is None
    assert not resolution.d_allowed
    assert not resolution.needs_no_overlap_d_search


# ----------------------------
#       ALPHA / DELTA
# ----------------------------


def test_alpha_wins_ties():
    resolution = resolve([], [], chain_type="VA")
    assert resolution.chain_type_to_show == "VA"
    resolution = resolve([], [], chain_type="VD")
    assert resolution.chain_type_to_show == "VA"


def test_delta_interpretation_with_delta_j():
    traj = make_alignment("TRAJ1*01", 305, 360, score=50.0)
    trdj = make_alignment("TRDJ1*01", 305, 355, score=80.0)
    trdd = make_alignment("TRDD2*01", 298, 304, score=12.0)
    resolution = resolve([trdd], [trdj, traj], chain_type="VA")
    assert resolution.chain_type_to_show == "VD"
    assert resolution.j is trdj
    assert resolution.d is trdd


def test_alpha_interpretation_with_alpha_j():
    traj = make_alignment("TRAJ1*01", 305, 360, score=90.0)
    trdj = make_alignment("TRDJ1*01", 305, 355, score=80.0)
    resolution = resolve([], [traj, trdj], chain_type="VD")
    assert resolution.chain_type_to_show == "VA"
    assert resolution.j is traj
    assert resolution.d is None


# ----------------------------
#     JUNCTION D SEARCH
# ----------------------------


def test_resolve_d_only_within_junction():
    _, d, j = vdj()
    resolution = resolve([d], [j])
    junction_d = make_alignment("IGHD2-2*01", 297, 304, subject_start=10)
    resolved = resolve_d_only([junction_d], resolution, 296, False, QUERY_LENGTH)
    assert resolved.d is junction_d
    assert resolved.j is j
    assert not resolved.needs_no_overlap_d_search


def test_resolve_d_only_rejects_any_overlap():
    _, d, j = vdj()
    resolution = resolve([d], [j])
    resolved = resolve_d_only([d], resolution, 296, False, QUERY_LENGTH)
    assert resolved.d is None


# ----------------------------
#        ANNOTATION
# ----------------------------


def test_annotate_dj(layout):
    _, d, j = vdj()
    resolution = resolve([d], [j], overlap_tolerance=5, layout=layout)
    partial = annotate_dj(resolution, QUERY_LENGTH, layout)
    assert partial["j_call"] == "IGHJ4*02"
    assert partial["j_chain_type"] == "JH"
    assert (partial["j_query_start"], partial["j_query_end"]) == (305, 340)
    assert partial["d_call"] == "IGHD3-3*01"
    assert partial["d_chain_type"] == "DH"
    assert (partial["d_query_start"], partial["d_query_end"]) == (296, 310)
    # D frame offset 1, subject start 8
    assert partial["d_frame_start"] == 298


def test_annotate_dj_minus_strand():
    # oriented J span [305, 340) is [20, 55) on the plus strand
    j = make_alignment(J_GENE, 20, 55, subject_start=13, strand="-")
    resolution = resolve([], [j], minus_strand=True)
    partial = annotate_dj(resolution, QUERY_LENGTH)
    assert resolution.j is j
    assert (partial["j_query_start"], partial["j_query_end"]) == (305, 340)


def test_annotate_dj_without_j():
    partial = annotate_dj(resolve([], []), QUERY_LENGTH)
    assert "j_call" not in partial
    assert partial["chain_type_to_show"] == "VH"
