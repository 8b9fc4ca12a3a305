"""Shared validators package for the application.

Available validators:
- password.py: strength rules for the mobile app password set at registration
"""
