"""
Record store, ingestion pipeline and query engine.
"""
