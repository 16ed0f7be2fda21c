"""CLI module for meterly."""
