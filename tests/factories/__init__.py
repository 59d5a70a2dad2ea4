"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .square import SquareOrderFactory, SquareLineItemFactory, money

__all__ = [
    "SquareOrderFactory",
    "SquareLineItemFactory",
    "money",
]
