"""Enrichment pipeline: intake, job queues, orchestration and progress."""
