"""HTTP surface for triggering the treasury loops."""
