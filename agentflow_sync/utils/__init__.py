"""Small helpers shared across the sync engine."""
