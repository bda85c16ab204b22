"""Services built on the repository and sync engine."""
