"""Image download-and-cache proxy."""
