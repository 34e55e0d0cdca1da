"""Keep local files in sync with remote HTTP(S) resources."""

__version__ = "0.1.0"
