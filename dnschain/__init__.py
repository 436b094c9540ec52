"""Composable DNS query processing chains: sequences of rules built from matchers and executable plugins."""

__version__ = "0.1.0"