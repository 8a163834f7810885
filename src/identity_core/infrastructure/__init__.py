"""Infrastructure layer: persistence, cache, configuration, logging and auth services."""
