"""Utility helpers for the Spark model runtime."""
