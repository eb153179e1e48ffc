"""PPC research export service."""
