"""
Scan Review Service - AI-assisted multi-image scan review
=========================================================

A minimal, single-case service for:
1. Analyzing every image of a scan with a vision LLM (bounded concurrency)
2. Merging per-image results into a deduplicated finding list
3. Running the primary -> peer -> finalize review workflow

One active case at a time, persisted as a single state blob.
"""

__version__ = "1.0.0"
