"""Catalog seed data."""
