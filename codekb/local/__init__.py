"""
Local code index: per-project structural graph and semantic vectors.

Chunking and graph extraction are deterministic and need no model; the
vector layer is optional and only runs when an embedding client is set.
"""
