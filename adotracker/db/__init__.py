"""Local embedded store."""
