"""LSAT macaroons, caveats, satisfiers, tokens, token storage and call interceptors."""

__version__ = "0.1.0"