"""Storage adapters for MeterForge."""
