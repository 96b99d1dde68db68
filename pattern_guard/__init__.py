"""
pattern_guard — semantic code index with architectural pattern enforcement.

  - index:    chunking, embedding cache, vector index, incremental indexer
  - patterns: unsupervised pattern clustering and the pattern knowledge base
  - enforcer: similarity and heuristic checks for newly written code
"""

__version__ = "0.1.0"
