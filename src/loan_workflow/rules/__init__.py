# This project was developed with assistance from AI tools.
"""Packaged underwriting rules data."""
