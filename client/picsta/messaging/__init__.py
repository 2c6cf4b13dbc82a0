"""Conversation messaging: stream reducer, delivery layer, unread aggregation."""
