"""Ascent access control: authorization and impersonation resolution."""

__version__ = "0.1.0"
