"""Adapters that connect the core pipeline to Messages, Twitter and disk."""
