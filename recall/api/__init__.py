"""
FastAPI application exposing the record store and search tool.
"""
