"""
Numba Configuration
===================

Switches read by ``ldhat.utils.numba_utils.numba_switchable`` when a kernel
is decorated. Lookup order for a kernel such as
``ldhat.utils.pair_spectrum.count_pair_tables``:

1. ``KERNEL_OVERRIDES`` keyed by the kernel's dotted name
2. ``MODULE_OVERRIDES`` keyed by the module name
3. ``JIT_ENABLED``

Changes only reach kernels decorated afterwards, so set them before
importing the analysis modules.
"""

import os
from pathlib import Path

# LDHAT_DISABLE_JIT=1 runs every kernel as plain Python
JIT_ENABLED: bool = os.environ.get("LDHAT_DISABLE_JIT", "").lower() not in ("1", "true", "yes")

MODULE_OVERRIDES: dict[str, bool] = {}

KERNEL_OVERRIDES: dict[str, bool] = {
    # 'ldhat.samplers.rjmcmc.mh_accept': False,
}

# Compiled kernels are cached beside the sources unless this points elsewhere
CACHE_DIR: Path | str | None = os.environ.get("LDHAT_NUMBA_CACHE") or None
