"""Service layer for the anote store."""
