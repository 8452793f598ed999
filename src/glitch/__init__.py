"""Glitch: live pipeline graph sync and layout."""
