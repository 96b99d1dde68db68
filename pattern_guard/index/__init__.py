"""
Indexing pipeline: chunker → embedding cache → vector index, driven by the
code indexer and persisted in the state store.
"""
