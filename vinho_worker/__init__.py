"""Vinho label-resolution worker."""
