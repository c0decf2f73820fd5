"""LMSR pricing and settlement engine for binary outcome markets."""

__version__ = "0.1.0"
