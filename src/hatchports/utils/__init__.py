"""Utility helpers for hatch-ports."""
