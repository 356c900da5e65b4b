"""Shared types, logging and small utilities for the hypermatch packages."""
