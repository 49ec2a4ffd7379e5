"""promptkeep monitoring."""
