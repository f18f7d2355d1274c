"""
LDhat Core Utilities
====================

Allele matrices, site-type classification, likelihood surfaces, block maps,
file I/O and summary statistics. Plotting lives in
:mod:`ldhat.utils.plotting` and is imported on demand.
"""

from ldhat.utils.type_def import *
from ldhat.utils.errors import *
from ldhat.utils.site_types import *
from ldhat.utils.alignment import *
from ldhat.utils.pair_spectrum import *
from ldhat.utils.coalescent import *
from ldhat.utils.likelihood_surface import *
from ldhat.utils.block_map import *
from ldhat.utils.statistics import *
from ldhat.utils.io import *
