"""Shared primitives used across the venue layer."""

__all__ = ['ring_buffer']
