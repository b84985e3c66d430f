"""Tessera command line interface."""
