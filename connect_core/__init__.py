"""connect-core: platform connection flows, PKCE state and token health."""

__version__ = "0.1.0"
