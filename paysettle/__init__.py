"""Idempotent payment webhook ingestion and subscription settlement."""
