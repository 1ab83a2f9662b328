"""HTTP surface for the TaskGrid scheduler."""
