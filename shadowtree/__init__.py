"""shadowtree: containerized Claude sessions with a host-side shadow repository."""

__version__ = "0.1.0"
