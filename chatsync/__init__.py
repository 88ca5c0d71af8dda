"""chatsync - backend-agnostic real-time chat synchronization."""

__version__ = "1.0.0"
