"""loophook: persistent-mode hook router for interactive coding agents."""

__version__ = "0.3.0"
