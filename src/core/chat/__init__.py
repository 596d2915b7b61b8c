# src/core/chat/__init__.py
"""
Домен чата.
Беседы, сообщения, отметки о прочтении.
"""

from src.core.chat.models import Conversation, ConversationCreateDTO, Message, MessageCreateDTO

__all__ = ["Conversation", "ConversationCreateDTO", "Message", "MessageCreateDTO"]
