"""Moments achievements backend."""
