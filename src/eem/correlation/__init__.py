"""Entity correlation detection and vector similarity."""
