"""
pyldhat
=======

Population recombination rate estimation from pairwise composite
likelihoods, with a reversible-jump block model of rate variation.

Subpackages:
    configs:  run parameters and Numba switches
    utils:    core data structures, likelihoods, I/O and statistics
    samplers: block-map search
"""

__version__ = "0.1.0"
