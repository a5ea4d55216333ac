"""Realtime sync of legal-case deduction records with an offline asset cache."""

__version__ = "0.1.0"
