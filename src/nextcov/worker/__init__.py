"""Worker processes for parallel conversion."""
