"""chatsync: real-time chat client core."""
__version__ = "0.1.0"
