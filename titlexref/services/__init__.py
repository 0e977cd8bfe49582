"""Domain services: identifier resolution, storage and enrichment."""
