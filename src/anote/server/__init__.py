"""External access adapter for the anote store."""
