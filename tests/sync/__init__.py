"""
Tests for the markdown tree to Outline synchronization pipeline.

Covers event normalization, identity records and reservations, conflict
resolution, dispatch flow control, batch reconciliation and the engine
that ties them together. Remote calls go to InMemoryDocumentStore.
"""
