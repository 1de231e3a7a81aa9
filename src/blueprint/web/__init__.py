"""Lifestyle Blueprint Web API."""
