"""Tuple-space packet classifiers, their cost models and trace file tools."""

__version__ = "0.1.0"