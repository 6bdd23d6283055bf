"""Local sqlite catalog store."""
