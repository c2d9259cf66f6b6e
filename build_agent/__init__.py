"""Remote build agent driving build sessions for a build master."""

__version__ = "0.1.0"
