"""Persistence services and maintenance scheduling."""
