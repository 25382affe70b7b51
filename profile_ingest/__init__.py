"""Profile ingestion backend: spreadsheet parsing, normalization, persistence, API.

Uploaded spreadsheets flow through ingestion, normalization and
reconciliation before new profiles are written in a single batch.
"""
