"""Network plugins and port allocation for game-server pods."""

__version__ = "0.1.0"
