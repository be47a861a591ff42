"""
redupes
Undo IntxLNK deduplication: find marker files and restore the original content.
"""

__version__ = "1.0.0"
