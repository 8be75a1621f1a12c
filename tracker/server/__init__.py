"""Authoritative catalog/progress store served over HTTP."""
