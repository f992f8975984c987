"""DORA delivery metrics derived from GitHub pull requests and Jira incidents."""

__version__ = "0.1.0"
