"""StackSet state, resource generation and traffic switching."""

__version__ = "0.1.0"