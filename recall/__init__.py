"""
Recall: a persistent associative memory with semantic (vector) search.
"""

__version__ = "1.0.0"
