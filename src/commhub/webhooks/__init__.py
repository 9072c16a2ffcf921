"""
Provider webhook ingestion: verification, normalization and idempotent apply.
"""
