from chatsync.models.models import ChatRoom, Message, MessageType, User

__all__ = ["ChatRoom", "Message", "MessageType", "User"]
