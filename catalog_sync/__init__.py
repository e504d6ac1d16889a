"""
Catalog Sync - resumable CSV to remote catalog pipeline

Plans CSV files into deterministic batch jobs, processes them against the
remote product catalog, and checkpoints progress so a restart resumes where
the previous run stopped.
"""

__version__ = "0.1.0"
