"""Automated direct-message response engine."""
