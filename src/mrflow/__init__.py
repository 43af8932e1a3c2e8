"""GitLab merge request lifecycle phase analysis."""

__version__ = "0.1.0"
