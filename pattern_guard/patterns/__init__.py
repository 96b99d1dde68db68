"""
Pattern knowledge base: unsupervised clustering of indexed chunks into named,
categorised patterns.
"""
