"""pipewright - declarative CI pipeline runner."""

__version__ = "0.4.0"
