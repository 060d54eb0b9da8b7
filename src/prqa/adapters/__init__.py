"""Adapters around external artifacts."""
