"""Command line interface for the aves learning loop."""
