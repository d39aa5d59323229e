"""Core domain package for textweet.

Core contains normalization, the ledger-driven publish pipeline and the error
taxonomy without any Messages database, Twitter or Pillow code, keeping the
business logic portable.
"""
