"""Core models, configuration, errors, logging and resilience."""
