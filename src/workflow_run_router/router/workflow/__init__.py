"""Explicit routing domain concepts.

This package introduces first-class types for:
- Completion events (what finished, and how)
- Conclusion predicates (which outcomes a subscription cares about)
- Action configuration and the actions themselves (idempotent side effects)
- The trust context actions execute under
"""

__all__: list[str] = []
