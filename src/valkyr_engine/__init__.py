"""Task lifecycle and git concurrency engine for parallel agent worktrees."""

__version__ = "0.1.0"

__all__ = ["__version__"]
