"""Backend package: DB models, pipelines, APIs.

This package orchestrates document ingestion, chunked extraction, date
normalization, reconciliation against the stored CV, the review queue and the
background import runner.
"""
