"""Data models for notevault."""
