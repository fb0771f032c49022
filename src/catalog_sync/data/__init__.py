"""Catalog data: pydantic models and SQLite stores."""
