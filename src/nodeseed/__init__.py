"""nodeseed: node identity and configuration bootstrap."""

__version__ = "0.3.0"
