"""tpi - Turing Pi 2 BMC command-line client."""

__version__ = "1.0.7"
