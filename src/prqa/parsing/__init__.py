"""Source parsing helpers."""
