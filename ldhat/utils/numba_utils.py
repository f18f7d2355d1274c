"""
Numba Switchable Decorator
==========================

JIT compilation for the numeric kernels of ldhat (pair table counting, grid
interpolation, Metropolis-Hastings acceptance), controlled by
:mod:`ldhat.configs.numba_config`.

A decorated kernel is the compiled dispatcher when JIT is on and the plain
function otherwise. Either way its pure Python body stays reachable as
``kernel.python``, which the tests use to check both paths agree.
"""

import os
import logging
import warnings
from pathlib import Path
from typing import Callable, Optional

from numba import njit

from ldhat.configs import numba_config as config

logger = logging.getLogger(__name__)


if config.CACHE_DIR is not None:
    _cache = Path(config.CACHE_DIR)
    _cache.mkdir(parents=True, exist_ok=True)
    os.environ['NUMBA_CACHE_DIR'] = str(_cache.resolve())


def _jit_requested(module_name: str, kernel_name: str) -> bool:
    if kernel_name in config.KERNEL_OVERRIDES:
        return config.KERNEL_OVERRIDES[kernel_name]
    return config.MODULE_OVERRIDES.get(module_name, config.JIT_ENABLED)


def numba_switchable(func: Optional[Callable] = None, *, cache: bool = True,
                     fastmath: bool = False, **njit_kwargs) -> Callable:
    """
    Compile ``func`` with ``numba.njit`` unless the config switches it off.

    Usable bare (``@numba_switchable``) or with options
    (``@numba_switchable(cache=False)``).

    Args:
        func: Kernel to decorate.
        cache: Cache the compiled kernel on disk.
        fastmath: Passed to ``njit``. Keep it off for log-likelihood kernels,
            they depend on ``-inf`` arithmetic.
        **njit_kwargs: Further ``njit`` options.

    The returned object carries ``python`` (the undecorated kernel),
    ``is_jit_enabled`` and ``full_name``.
    """

    def decorator(fn: Callable) -> Callable:
        full_name = f"{fn.__module__}.{fn.__qualname__}"
        compiled = None

        if _jit_requested(fn.__module__, full_name):
            try:
                compiled = njit(fn, cache=cache, fastmath=fastmath, **njit_kwargs)
            except Exception as e:
                warnings.warn(f"Numba setup failed for '{full_name}': {e}", RuntimeWarning)
        else:
            logger.debug("JIT disabled for %s", full_name)

        kernel = fn if compiled is None else compiled
        kernel.python = fn
        kernel.is_jit_enabled = compiled is not None
        kernel.full_name = full_name
        return kernel

    if func is not None:
        return decorator(func)
    return decorator
