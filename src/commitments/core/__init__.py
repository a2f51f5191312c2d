"""Cross-cutting infrastructure: logging and telemetry."""
