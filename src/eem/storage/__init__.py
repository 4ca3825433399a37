"""Blob storage, semantic index and record repositories."""
