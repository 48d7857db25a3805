"""Storage backends implementing the repository contract."""
