"""Cross-cutting infrastructure: config, logging, errors, security, audit."""
