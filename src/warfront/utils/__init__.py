"""Utility functions for Warfront."""

from warfront.utils.rng import generate_seed, random_int, roll_percent

__all__ = [
    "generate_seed",
    "random_int",
    "roll_percent",
]
