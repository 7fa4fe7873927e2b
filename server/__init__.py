"""Forgebench server package."""
