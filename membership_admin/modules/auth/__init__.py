"""Session introspection."""
