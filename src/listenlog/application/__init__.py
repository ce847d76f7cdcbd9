"""Application layer: services, caches and background workers."""
