"""Cross-cutting infrastructure: clock, logging, metrics."""
