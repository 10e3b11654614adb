"""Kubernetes device plugin exposing spare node memory as colocation memory blocks."""

__version__ = "0.1.0"