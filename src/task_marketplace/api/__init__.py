"""HTTP surface for the marketplace core."""
