"""REST client for the chat server."""
