"""Embedding and completion gateway."""

from eem.gateway.gateway import Gateway, parse_entities

__all__ = ["Gateway", "parse_entities"]
