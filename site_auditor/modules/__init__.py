"""Audit feature modules."""
