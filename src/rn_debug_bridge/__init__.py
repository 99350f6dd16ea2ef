"""Debugging bridge between a debug front-end and a React Native packager."""

__version__ = "0.1.0"
