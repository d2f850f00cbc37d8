# Copyright (c) 2024 Bryan Briney
# Distributed under the terms of the MIT License.
# SPDX-License-Identifier: MIT

import warnings

from Bio import BiopythonWarning

warnings.simplefilter("ignore", BiopythonWarning)
warnings.simplefilter(action="ignore", category=FutureWarning)

from .core.exceptions import (
    ConfigurationError,
    FatalSearchEngineError,
    SearchEngineError,
)
from .core.igstar import run
from .core.options import GeneDatabase, SearchParameters
from .core.pipeline import IgSearch, run_igsearch
from .version import __version__
