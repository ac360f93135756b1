"""Synthetic biobank data for tests and demos."""

from .generate_biobank_data import BiobankExtractGenerator

__all__ = ['BiobankExtractGenerator']
