"""Web interface for shadowtree."""
