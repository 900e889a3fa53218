"""Conversation log parsers."""
