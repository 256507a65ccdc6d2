"""Recaply backend API."""
