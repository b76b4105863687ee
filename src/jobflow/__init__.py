"""Jobflow - Embedding generation and semantic matching for a job board.

This package provides the background pipeline that turns job postings and
candidate profiles into vectors, ranks them against each other, and keeps
scored job/candidate matches fresh using a PostgreSQL-backed task queue and
a pool of worker processes.
"""

__version__ = "0.1.0"
