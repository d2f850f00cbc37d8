# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


from dataclasses import dataclass, field, fields
from typing import Iterable, Optional, Union

from abutils.tools.log import LoggingMixin

__all__ = ["AnnotationRecord", "DOMAIN_FIELDS", "FRAME_FIELDS", "OUTPUT_FIELDS"]


DOMAIN_REGIONS = ["fwr1", "cdr1", "fwr2", "cdr2", "fwr3"]

# query coordinates, in order along the V gene
DOMAIN_FIELDS = [f"{r}_{pos}" for r in DOMAIN_REGIONS for pos in ["start", "end"]]
SUBJECT_DOMAIN_FIELDS = [
    f"{r}_subject_{pos}" for r in DOMAIN_REGIONS for pos in ["start", "end"]
]
FRAME_FIELDS = ["v_frame_start", "v_end_frame_start", "j_frame_start"]


@dataclass
class AnnotationRecord(LoggingMixin):
    """
    Annotation of a single query sequence.

    All coordinates are 0-based and half-open, on the oriented query (the reverse
    complement of the input query if ``minus_strand`` is ``True``). Fields that could
    not be determined are ``None``, which is distinct from a position of ``0``.

    Includes the LoggingMixin, which provides methods for logging and exception handling.

    """

    # most useful info up front
    sequence_id: str = None
    chain_type: str = None
    chain_type_to_show: str = None
    v_call: str = None
    d_call: str = None
    j_call: str = None
    c_call: str = None
    minus_strand: bool = False

    # everything else
    query_length: int = None
    v_chain_type: str = None
    d_chain_type: str = None
    j_chain_type: str = None
    c_chain_type: str = None
    v_query_start: int = None
    v_query_end: int = None
    d_query_start: int = None
    d_query_end: int = None
    j_query_start: int = None
    j_query_end: int = None
    c_query_start: int = None
    c_query_end: int = None
    v_frame_start: int = None
    v_end_frame_start: int = None
    j_frame_start: int = None
    d_frame_start: int = None
    domain_subject: str = None
    fwr1_start: int = None
    fwr1_end: int = None
    cdr1_start: int = None
    cdr1_end: int = None
    fwr2_start: int = None
    fwr2_end: int = None
    cdr2_start: int = None
    cdr2_end: int = None
    fwr3_start: int = None
    fwr3_end: int = None
    cdr3_start: int = None
    cdr3_end: int = None
    fwr1_subject_start: int = None
    fwr1_subject_end: int = None
    cdr1_subject_start: int = None
    cdr1_subject_end: int = None
    fwr2_subject_start: int = None
    fwr2_subject_end: int = None
    cdr2_subject_start: int = None
    cdr2_subject_end: int = None
    fwr3_subject_start: int = None
    fwr3_subject_end: int = None
    fwr4_start: int = None
    fwr4_end: int = None
    fwr4_extra_bases: int = None
    c_region_start: int = None
    c_region_end: int = None
    sequence_aa: str = None
    messages: list = field(default_factory=list)

    def __post_init__(self):
        # establish the list of output fields
        self.output_fields = list(self.__dict__.keys())

        # initialize the LoggingMixin
        super().__init__()

    @property
    def v_end(self) -> Optional[int]:
        return self.v_query_end

    @property
    def has_v(self) -> bool:
        return self.v_call is not None

    @property
    def has_j(self) -> bool:
        return self.j_call is not None

    @property
    def domains(self) -> list:
        return [getattr(self, f) for f in DOMAIN_FIELDS]

    def fold(self, partial: Optional[dict], label: Optional[str] = None) -> None:
        """
        Folds a stage's partial annotation into the record.

        Parameters
        ----------
        partial : dict
            Field names and values produced by a single pipeline stage. Unknown
            field names raise ``AttributeError``.

        label : str, optional
            Stage name, used as a header for the logged values.

        """
        if not partial:
            return
        if label is not None:
            self.log(f"\n{label}")
        for key, value in partial.items():
            if key not in self.output_fields:
                raise AttributeError(f"AnnotationRecord has no field '{key}'")
            setattr(self, key, value)
            self.log(f"{key.upper()}:", value)

    def add_message(self, message: str) -> None:
        self.messages.append(message)
        self.log("MESSAGE:", message)

    def to_dict(
        self,
        include: Optional[Union[Iterable, str]] = None,
        exclude: Optional[Union[Iterable, str]] = None,
    ) -> dict:
        """
        Convert the AnnotationRecord to a dictionary of annotations.

        Parameters:
        ----------
        include : Iterable or str, default: None
            Fields to include in the dictionary. If not provided, all fields are included.

        exclude : Iterable or str, default: None
            Fields to exclude from the dictionary.

        Returns:
        --------
        dict: The dictionary representation of the annotation.

        """
        output_fields = list(self.output_fields)
        if include:
            if isinstance(include, str):
                include = [include]
            output_fields = ["sequence_id"] + [
                f for f in include if f in output_fields and f != "sequence_id"
            ]
        if exclude is not None:
            if isinstance(exclude, str):
                exclude = [exclude]
            output_fields = [f for f in output_fields if f not in exclude]
        d = {k: self.__dict__.get(k, None) for k in output_fields}
        if "messages" in d:
            d["messages"] = "|".join(d["messages"]) if d["messages"] else None
        return d


OUTPUT_FIELDS = [f.name for f in fields(AnnotationRecord)]
