"""Core computational modules for CellType-Transfer.

This package contains the analysis engines:
- transfer: Reference building, correlation scoring, pruning and QC tables
"""
