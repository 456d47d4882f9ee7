"""Ordered migration modules; each exposes ``up(reconciler)`` and ``down(reconciler)``."""
