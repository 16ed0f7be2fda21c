"""API module for meterly."""
