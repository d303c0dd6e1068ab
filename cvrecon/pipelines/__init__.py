"""Ingestion pipelines: chunking, dates, reconciliation, review and jobs.

Each step is callable on its own so the synchronous import, the chunk
endpoint and the background runner share one implementation.
"""
