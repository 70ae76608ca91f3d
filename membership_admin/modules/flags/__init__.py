"""Member flag grants and flag definitions."""
