"""Notification center: list, read state, delete and time-bucket grouping."""
