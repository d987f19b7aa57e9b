"""Worker CLI contracts and bootstrap material."""
