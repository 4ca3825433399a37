"""Context retrieval over stored activities, relations and flows."""

from eem.retrieval.context import ContextBuilder, ContextDigest, ContextItem

__all__ = ["ContextBuilder", "ContextDigest", "ContextItem"]
