"""Smart CBT — computer-based testing with exam session integrity."""

__version__ = "1.0.0"
