"""Chat Service: HTTP surface over the moderation core.

Components:
- handler.py: Flask app for chat, message views, review and metrics
"""
