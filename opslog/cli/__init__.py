"""opslog command-line interface."""
