"""
Document intake core package.

The ingestion subsystem turns a newly stored object into normalized section
records. It exposes dataclasses for documents and sections, the status
lifecycle, storage and record-store adapters, pure format parsers, and a
worker that drives each arrival event through dedup, parse, persistence and
completion.
"""
