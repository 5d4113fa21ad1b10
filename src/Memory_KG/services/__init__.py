"""Service layer: embedding dispatch."""
