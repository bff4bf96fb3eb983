"""Catalog read access (movies, series, episodes) and the user directory."""
