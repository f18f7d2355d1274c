"""Run-scoped configuration for pyldhat."""

from ldhat.configs.run_config import RunConfig

__all__ = ["RunConfig"]
