"""Utility helpers for CareSync."""
