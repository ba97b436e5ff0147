"""Worker monitoring."""
