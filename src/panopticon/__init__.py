"""Panopticon network inventory scanner."""
