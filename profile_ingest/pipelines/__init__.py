"""Pipelines for normalizing spreadsheet rows and reconciling them with storage.

Each step is callable on its own so the upload handler and scripts can reuse it.
"""
