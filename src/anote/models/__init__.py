"""Data models for the anote store."""
