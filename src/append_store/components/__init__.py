"""Append store storage components."""
