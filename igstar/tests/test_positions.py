# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT

import pytest

from ..annotation.positions import (
    get_position_from_aligned_reference,
    project_subject_position,
)
from .conftest import make_alignment


@pytest.fixture
def aligned_sequence_no_gaps():
    return "ATGCATGCATGC"


@pytest.fixture
def aligned_sequence_with_gap():
    return "ATGC----ATGC"


@pytest.fixture
def aligned_reference_with_gap():
    return "ATGC--GCATGC"


# ----------------------------
#   POSITION FROM REFERENCE
# ----------------------------


def test_position_from_reference_no_gaps(aligned_sequence_no_gaps):
    assert (
        get_position_from_aligned_reference(
            5, aligned_sequence_no_gaps, aligned_sequence_no_gaps
        )
        == 5
    )


def test_position_from_reference_query_deletion(aligned_sequence_with_gap):
    reference = "ATGCATGCATGC"
    # reference positions 4-7 are deleted in the query
    aligned = aligned_sequence_with_gap
    assert get_position_from_aligned_reference(3, aligned, reference) == 3
    assert get_position_from_aligned_reference(8, aligned, reference) == 4


def test_position_from_reference_query_insertion(
    aligned_sequence_no_gaps, aligned_reference_with_gap
):
    # query positions 4 and 5 are insertions relative to the reference
    assert (
        get_position_from_aligned_reference(
            4, aligned_sequence_no_gaps, aligned_reference_with_gap
        )
        == 6
    )


def test_position_from_reference_leading_reference_gap():
    assert get_position_from_aligned_reference(0, "ATGCAT", "--GCAT") == 2


def test_position_from_reference_end(aligned_sequence_no_gaps):
    assert (
        get_position_from_aligned_reference(
            12, aligned_sequence_no_gaps, aligned_sequence_no_gaps
        )
        == 12
    )


def test_position_from_reference_out_of_range(aligned_sequence_no_gaps):
    seq = aligned_sequence_no_gaps
    assert get_position_from_aligned_reference(13, seq, seq) is None
    assert get_position_from_aligned_reference(-1, seq, seq) is None


# ----------------------------
#     SUBJECT PROJECTION
# ----------------------------


def test_project_linear_plus_strand():
    aln = make_alignment("IGHV1-2*02", 10, 300, subject_start=4)
    assert project_subject_position(50, aln, 400) == 56


def test_project_outside_alignment_is_linear():
    aln = make_alignment("IGHV1-2*02", 10, 300, subject_start=4)
    assert project_subject_position(0, aln, 400) == 6


def test_project_minus_strand():
    # oriented span is [400 - 300, 400 - 10) = [100, 390)
    aln = make_alignment("IGHV1-2*02", 10, 300, subject_start=4, strand="-")
    assert project_subject_position(4, aln, 400) == 100
    assert project_subject_position(54, aln, 400) == 150


def test_project_through_gapped_alignment():
    aln = make_alignment(
        "IGHV1-2*02",
        0,
        12,
        subject_start=0,
        subject_end=10,
        aligned_query="ATGCATGCATGC",
        aligned_subject="ATGC--GCATGC",
    )
    assert project_subject_position(3, aln, 12) == 3
    assert project_subject_position(6, aln, 12) == 8
    assert project_subject_position(10, aln, 12) == 12
