"""Domain services consumed by the guard pipeline."""
