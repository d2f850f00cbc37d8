# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT


__all__ = [
    "ConfigurationError",
    "SearchEngineError",
    "FatalSearchEngineError",
]


class ConfigurationError(ValueError):
    """
    Raised when the run configuration is inconsistent (for example, a D/J search was
    requested but no D or J germline database was provided). Configuration errors are
    always detected before any search is issued.
    """


class SearchEngineError(RuntimeError):
    """
    A single search engine call failed. The queries included in the failed call are
    annotated as "not found" for that gene class and the run continues.
    """

    def __init__(self, message: str, query_ids=None):
        super().__init__(message)
        self.query_ids = list(query_ids) if query_ids is not None else []


class FatalSearchEngineError(SearchEngineError):
    """
    A systemic search engine failure (for example, an unreadable germline database).
    Aborts the entire run.
    """
