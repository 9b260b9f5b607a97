"""Completion routing: ingress, subscription matching and dispatch."""

__all__: list[str] = []
