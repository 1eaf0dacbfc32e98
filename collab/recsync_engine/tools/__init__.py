"""Operational tools for RecSync."""
