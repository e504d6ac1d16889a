"""Candidate construction, diffing and row processing."""
