"""Utility helpers for phaseflow."""
