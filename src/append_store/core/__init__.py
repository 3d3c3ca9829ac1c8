"""Append store core package."""
