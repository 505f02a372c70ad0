"""While Humans Sleep: multi-project coding-agent dispatcher."""

__version__ = "0.3.0"
