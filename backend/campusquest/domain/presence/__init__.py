"""Live presence table and broadcast routing."""
